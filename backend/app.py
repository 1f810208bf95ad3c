import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from backend.routes import router
from xiantu.config import get_config
from xiantu.images import UnsplashImageSearch
from xiantu.llm import GeminiLLM
from xiantu.session import SessionController
from xiantu.storage import JsonFileStore

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    resolved.mkdir(parents=True, exist_ok=True)
    config = get_config(resolved)

    llm = GeminiLLM(api_key=config.gemini_api_key, model=config.gemini_model)
    image_search = UnsplashImageSearch(
        config.unsplash_access_key,
        per_page=config.image_candidates,
        fallback_query=config.image_fallback_query,
    )
    controller = SessionController(
        llm,
        JsonFileStore(resolved / "saves"),
        image_search=image_search,
        talent_points=config.talent_points,
        max_retries=config.max_retries,
        retry_base_delay=config.retry_base_delay,
    )
    logger.info("Data dir %s (save present: %s)", resolved, controller.has_save)

    app = FastAPI(title="Xiantu")
    app.state.data_dir = resolved
    app.state.config = config
    app.state.llm = llm
    app.state.image_search = image_search
    app.state.controller = controller
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
