# tests/test_config.py
from __future__ import annotations

import pytest

import config
from config import EngineConfig, load_config

_VARS = (
    "DB_HOST", "DB_PORT", "DB_USER", "DB_PASSWORD", "DB_NAME",
    "DB_POOL_MIN", "DB_POOL_MAX", "DB_CONNECT_TIMEOUT", "LOG_LEVEL",
    "ENGINE_MIN_PARTICIPANTS", "ENGINE_MAX_PARTICIPANTS", "ENGINE_CAS_RETRIES",
    "ENGINE_POINTS_PER_WIN", "ENGINE_GROUP_COUNT", "ENGINE_TEAMS_PER_GROUP",
    "ENGINE_KNOCKOUT_STAGE_TEAMS", "ENGINE_ROUND_DEADLINE_HOURS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setattr(config, "_maybe_load_env_file", lambda: None)
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = load_config()
    assert cfg.log_level == "INFO"
    assert cfg.mysql.host == "127.0.0.1"
    assert cfg.mysql.port == 3306
    assert cfg.mysql.database == "tournament_engine"
    assert cfg.engine == EngineConfig()
    assert cfg.engine.max_participants == 128


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DB_HOST", "db.internal")
    monkeypatch.setenv("DB_PORT", "3307")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("ENGINE_MAX_PARTICIPANTS", "64")
    monkeypatch.setenv("ENGINE_POINTS_PER_WIN", "2")
    cfg = load_config()
    assert cfg.mysql.host == "db.internal"
    assert cfg.mysql.port == 3307
    assert cfg.log_level == "DEBUG"
    assert cfg.engine.max_participants == 64
    assert cfg.engine.default_format_config().points_per_win == 2


def test_blank_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("DB_HOST", "   ")
    assert load_config().mysql.host == "127.0.0.1"


@pytest.mark.parametrize(
    "name,value,message",
    [
        ("DB_PORT", "abc", "DB_PORT"),
        ("DB_POOL_MIN", "0", "DB_POOL_MIN"),
        ("ENGINE_CAS_RETRIES", "0", "ENGINE_CAS_RETRIES"),
        ("ENGINE_ROUND_DEADLINE_HOURS", "0", "ENGINE_ROUND_DEADLINE_HOURS"),
        ("ENGINE_MIN_PARTICIPANTS", "1", "ENGINE_MIN_PARTICIPANTS"),
        ("ENGINE_MAX_PARTICIPANTS", "x", "ENGINE_MAX_PARTICIPANTS"),
    ],
)
def test_invalid_values(monkeypatch, name, value, message):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        load_config()


def test_pool_max_below_min(monkeypatch):
    monkeypatch.setenv("DB_POOL_MIN", "5")
    monkeypatch.setenv("DB_POOL_MAX", "2")
    with pytest.raises(ValueError, match="DB_POOL_MAX"):
        load_config()
