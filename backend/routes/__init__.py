"""FastAPI API endpoints under /api.

Endpoint groups: health + settings, and the session lifecycle (status, start,
choice, continue, reset, ending image). There is one session per server; the
SessionController lives on app.state.
"""

from fastapi import APIRouter

from .session import router as session_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(session_router)
