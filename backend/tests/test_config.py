"""Tests for YAML configuration loading."""
from pathlib import Path

import pytest

from app.config import AppConfig, get_config, load_config, reset_config, set_config


@pytest.fixture(autouse=True)
def _restore_config():
    yield
    reset_config()


def write(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults_when_files_missing(tmp_path):
    config = load_config(tmp_path / "missing.yaml", tmp_path / "missing-secrets.yaml")

    assert config.server.port == 8000
    assert config.logging.level == "info"
    assert config.chat.last_message_preview_length == 500
    assert config.chat.max_page_size == 100
    assert config.auth.algorithm == "HS256"
    assert Path(config.database.path) == tmp_path.resolve() / "chat.duckdb"


def test_settings_and_secrets_are_merged(tmp_path, monkeypatch):
    monkeypatch.delenv("CHAT_JWT_SECRET", raising=False)
    settings = write(tmp_path / "chat.settings.yaml", """
server:
  port: 9001
logging:
  level: debug
chat:
  max_text_length: 10
""")
    secrets = write(tmp_path / "chat.secrets.yaml", """
jwt:
  secret_key: from-file
""")

    config = load_config(settings, secrets)

    assert config.server.port == 9001
    assert config.logging.level == "debug"
    assert config.chat.max_text_length == 10
    assert config.secrets.jwt.secret_key == "from-file"


def test_relative_database_path_resolves_next_to_settings(tmp_path):
    settings = write(tmp_path / "chat.settings.yaml", "database:\n  path: data/chat.duckdb\n")
    config = load_config(settings, tmp_path / "none.yaml")
    assert Path(config.database.path) == tmp_path.resolve() / "data" / "chat.duckdb"


def test_memory_database_is_kept(tmp_path):
    settings = write(tmp_path / "chat.settings.yaml", "database:\n  path: ':memory:'\n")
    assert load_config(settings, tmp_path / "none.yaml").database.path == ":memory:"


def test_env_overrides_jwt_secret(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAT_JWT_SECRET", "from-env")
    secrets = write(tmp_path / "chat.secrets.yaml", "jwt:\n  secret_key: from-file\n")
    config = load_config(tmp_path / "none.yaml", secrets)
    assert config.secrets.jwt.secret_key == "from-env"


def test_empty_yaml_is_defaults(tmp_path):
    settings = write(tmp_path / "chat.settings.yaml", "")
    assert load_config(settings, tmp_path / "none.yaml").server.host == "0.0.0.0"


def test_set_config_overrides_cache():
    custom = AppConfig()
    custom.server.port = 1234
    set_config(custom)
    assert get_config() is custom
