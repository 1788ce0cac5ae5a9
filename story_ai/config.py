"""Settings loading: JSON settings file merged over defaults, keys from the environment."""

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from story_ai.models import AIConfig, AppSettings, Provider

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path("data") / "settings.json"

DEFAULT_AI_CONFIG = AIConfig(provider=Provider.GEMINI, model="gemini-2.5-flash", temperature=1.0)

API_KEY_ENV_VARS: dict[str, str] = {
    Provider.GEMINI.value: "GEMINI_API_KEY",
    Provider.OPENAI.value: "OPENAI_API_KEY",
    Provider.XAI.value: "XAI_API_KEY",
    Provider.OPENROUTER.value: "OPENROUTER_API_KEY",
    Provider.VOLCANO.value: "VOLCANO_API_KEY",
    Provider.CLAUDE.value: "CLAUDE_API_KEY",
}


def settings_path() -> Path:
    return Path(os.getenv("STORY_AI_SETTINGS", str(DEFAULT_SETTINGS_PATH)))


def load_settings(path: Path | None = None) -> AppSettings:
    """Read settings, returning defaults merged with stored values.

    Provider keys missing from the file are taken from the environment
    (``.env`` is loaded first).
    """
    load_dotenv()
    path = path or settings_path()
    stored: dict = {}
    if path.is_file():
        stored = json.loads(path.read_text(encoding="utf-8"))
        logger.debug("Loaded settings from %s", path)

    settings = AppSettings.model_validate(stored)
    for provider, env_var in API_KEY_ENV_VARS.items():
        if not settings.api_keys.get(provider) and os.getenv(env_var):
            settings.api_keys[provider] = os.environ[env_var]
    return settings
