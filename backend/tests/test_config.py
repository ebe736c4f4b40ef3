import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config as config_module
from config import Settings


def test_dedup_window_must_outlast_poll_interval():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, COPY_TRADE_DEDUP_WINDOW_SECONDS=10, COPY_TRADE_POLL_INTERVAL_SECONDS=10)

    ok = Settings(_env_file=None, COPY_TRADE_DEDUP_WINDOW_SECONDS=45, COPY_TRADE_POLL_INTERVAL_SECONDS=15)
    assert ok.COPY_TRADE_DEDUP_WINDOW_SECONDS == 45


def test_url_fields_are_trimmed():
    settings = Settings(_env_file=None, PROJECTX_API_URL=' "https://api.example.com/" ')
    assert settings.PROJECTX_API_URL == "https://api.example.com"


def test_relative_sqlite_path_is_anchored_to_project_root(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "_PROJECT_ROOT", tmp_path)
    settings = Settings(_env_file=None, DATABASE_URL="sqlite+aiosqlite:///data/test.db")
    assert settings.DATABASE_URL == f"sqlite+aiosqlite:///{(tmp_path / 'data' / 'test.db').resolve()}"
    assert (tmp_path / "data").is_dir()


def test_white_label_urls(monkeypatch):
    monkeypatch.setattr(config_module.settings, "PROJECTX_ALPHATICKS_HUB_URL", "https://rtc.alpha.example/hubs/user")
    assert config_module.projectx_hub_url("AlphaTicks") == "https://rtc.alpha.example/hubs/user"
    assert config_module.projectx_hub_url(None) == config_module.settings.PROJECTX_HUB_URL
