"""Tests for settings/secrets loading."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from roomchat.config import AppConfig, load_config


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_when_files_missing(tmp_path):
    config = load_config(tmp_path / "roomchat.settings.yaml")

    assert config.chat.default_room_key == "global"
    assert config.chat.default_room_title == "General chat"
    assert config.chat.max_text_length == 5000
    assert config.notifications.reply_cache_size == 200
    assert config.secrets.jwt.algorithm == "HS256"
    assert config.database.path == str(tmp_path.resolve() / "roomchat.duckdb")


def test_settings_and_sibling_secrets(tmp_path):
    settings = write(tmp_path / "roomchat.settings.yaml", """
server:
  port: 9100
logging:
  level: DEBUG
database:
  path: data/chat.duckdb
chat:
  default_room_key: lobby
  max_page_size: 50
""")
    write(tmp_path / "roomchat.secrets.yaml", """
jwt:
  secret_key: s3cret
""")

    config = load_config(settings)

    assert config.server.port == 9100
    assert config.logging.level == "debug"
    assert config.chat.default_room_key == "lobby"
    assert config.chat.max_page_size == 50
    assert config.secrets.jwt.secret_key == "s3cret"
    assert config.database.path == str(tmp_path.resolve() / "data" / "chat.duckdb")


def test_memory_database_is_not_resolved(tmp_path):
    settings = write(tmp_path / "roomchat.settings.yaml", "database:\n  path: ':memory:'\n")
    assert load_config(settings).database.path == ":memory:"


def test_explicit_secrets_path(tmp_path):
    settings = write(tmp_path / "a.yaml", "{}\n")
    secrets = write(tmp_path / "elsewhere.yaml", "jwt:\n  algorithm: HS512\n")
    assert load_config(settings, secrets).secrets.jwt.algorithm == "HS512"


def test_unknown_log_level_is_rejected():
    with pytest.raises(ValidationError):
        AppConfig(logging={"level": "chatty"})
