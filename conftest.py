import pytest

from story_ai.config import API_KEY_ENV_VARS


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point settings at an empty temp file location and hide real API keys."""
    monkeypatch.setenv("STORY_AI_SETTINGS", str(tmp_path / "settings.json"))
    for env_var in API_KEY_ENV_VARS.values():
        monkeypatch.delenv(env_var, raising=False)
    yield
