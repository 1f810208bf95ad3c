"""Health check and settings endpoints."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from xiantu.config import Config, update_config

from .models import UpdateSettings

router = APIRouter()


def _public(config: Config) -> dict:
    """Settings as shown to the UI; keys are reported as set/unset only."""
    data = config.model_dump(exclude={"gemini_api_key", "unsplash_access_key"})
    data["has_gemini_api_key"] = bool(config.gemini_api_key)
    data["has_unsplash_access_key"] = bool(config.unsplash_access_key)
    return data


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get app settings (model, turn lengths, which keys are configured)."""
    return _public(request.app.state.config)


@router.patch("/settings")
async def update_settings(request: Request, body: UpdateSettings):
    """Update settings (partial merge). New keys apply to the running session."""
    state = request.app.state
    try:
        config = update_config(state.data_dir, body.model_dump(exclude_none=True))
    except ValidationError as e:
        raise HTTPException(400, str(e))

    state.config = config
    state.llm.api_key = config.gemini_api_key
    state.llm.model = config.gemini_model
    state.image_search.access_key = config.unsplash_access_key
    return _public(config)
