import pytest

from storyboard_video import config
from storyboard_video.db import init_db


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "storyboard.db"

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "ai_api_base_url", "http://127.0.0.1:9")
    monkeypatch.setattr(config.settings, "ai_api_key", "test-key")
    monkeypatch.setattr(config.settings, "video_storyboard_token_cost", 3)
    monkeypatch.setattr(config.settings, "video_character_token_cost", 3)

    init_db()
    yield
