from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from story_ai.config import load_settings
from story_ai.routes import router

load_dotenv(Path(__file__).parent.parent / ".env")


def create_app(settings_path: Path | None = None) -> FastAPI:
    app = FastAPI(title="Story AI")
    app.state.settings = load_settings(settings_path)
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses STORY_AI_SETTINGS or ./data/settings.json)
app = create_app()
