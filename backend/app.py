from pathlib import Path

from fastapi import FastAPI

from backend.routes import router
from chatgroup.config import Settings
from chatgroup.llm import LLM
from chatgroup.storage import Storage


def create_app(
    data_dir: Path | None = None,
    llm: LLM | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the API app. Arguments override what the environment provides."""
    settings = settings or Settings.from_env()

    app = FastAPI(title="ChatGroup")
    app.state.storage = Storage(data_dir or settings.data_dir)
    app.state.llm = llm or settings.make_llm()
    app.include_router(router, prefix="/api")
    return app
