# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from domain.models import FormatConfig


def _maybe_load_env_file() -> None:
    """
    Load .env from the project root (same folder as this config.py).
    Never overwrites already-set environment variables.
    """
    dotenv_path = Path(__file__).resolve().parent / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path, override=False)


@dataclass(frozen=True)
class MySqlConfig:
    host: str
    port: int
    user: str
    password: str
    database: str
    minsize: int = 1
    maxsize: int = 5
    connect_timeout: int = 10


@dataclass(frozen=True)
class EngineConfig:
    min_participants: int = 2
    max_participants: int = 128
    cas_retries: int = 3
    # set_round_deadlines without an explicit deadline uses now + this
    round_deadline_hours: int = 24

    # defaults for group stage / table formats; per-tournament config overrides these
    points_per_win: int = 3
    group_count: int = 4
    teams_per_group: int = 4
    knockout_stage_teams: int = 2

    def default_format_config(self) -> FormatConfig:
        return FormatConfig(
            group_count=self.group_count,
            teams_per_group=self.teams_per_group,
            knockout_stage_teams=self.knockout_stage_teams,
            points_per_win=self.points_per_win,
        )


@dataclass(frozen=True)
class AppConfig:
    log_level: str
    mysql: MySqlConfig
    engine: EngineConfig


def _getenv(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _int(value: str | None, var_name: str, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{var_name} must be an integer, got: {value!r}") from e


def load_engine_config() -> EngineConfig:
    min_participants = _int(_getenv("ENGINE_MIN_PARTICIPANTS"), "ENGINE_MIN_PARTICIPANTS", 2)
    max_participants = _int(_getenv("ENGINE_MAX_PARTICIPANTS"), "ENGINE_MAX_PARTICIPANTS", 128)
    cas_retries = _int(_getenv("ENGINE_CAS_RETRIES"), "ENGINE_CAS_RETRIES", 3)
    deadline_hours = _int(_getenv("ENGINE_ROUND_DEADLINE_HOURS"), "ENGINE_ROUND_DEADLINE_HOURS", 24)

    if min_participants < 2:
        raise ValueError("ENGINE_MIN_PARTICIPANTS must be >= 2")
    if max_participants < min_participants:
        raise ValueError("ENGINE_MAX_PARTICIPANTS must be >= ENGINE_MIN_PARTICIPANTS")
    if cas_retries < 1:
        raise ValueError("ENGINE_CAS_RETRIES must be >= 1")
    if deadline_hours < 1:
        raise ValueError("ENGINE_ROUND_DEADLINE_HOURS must be >= 1")

    return EngineConfig(
        min_participants=min_participants,
        max_participants=max_participants,
        cas_retries=cas_retries,
        round_deadline_hours=deadline_hours,
        points_per_win=_int(_getenv("ENGINE_POINTS_PER_WIN"), "ENGINE_POINTS_PER_WIN", 3),
        group_count=_int(_getenv("ENGINE_GROUP_COUNT"), "ENGINE_GROUP_COUNT", 4),
        teams_per_group=_int(_getenv("ENGINE_TEAMS_PER_GROUP"), "ENGINE_TEAMS_PER_GROUP", 4),
        knockout_stage_teams=_int(_getenv("ENGINE_KNOCKOUT_STAGE_TEAMS"), "ENGINE_KNOCKOUT_STAGE_TEAMS", 2),
    )


def load_config() -> AppConfig:
    _maybe_load_env_file()

    host = _getenv("DB_HOST", "127.0.0.1") or "127.0.0.1"
    port = _int(_getenv("DB_PORT"), "DB_PORT", 3306)
    user = _getenv("DB_USER", "root") or "root"
    password = _getenv("DB_PASSWORD", "") or ""
    database = _getenv("DB_NAME", "tournament_engine") or "tournament_engine"

    minsize = _int(_getenv("DB_POOL_MIN"), "DB_POOL_MIN", 1)
    maxsize = _int(_getenv("DB_POOL_MAX"), "DB_POOL_MAX", 5)
    connect_timeout = _int(_getenv("DB_CONNECT_TIMEOUT"), "DB_CONNECT_TIMEOUT", 10)

    if minsize < 1:
        raise ValueError("DB_POOL_MIN must be >= 1")
    if maxsize < minsize:
        raise ValueError("DB_POOL_MAX must be >= DB_POOL_MIN")

    return AppConfig(
        log_level=(_getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
        mysql=MySqlConfig(
            host=host,
            port=port,
            user=user,
            password=password,
            database=database,
            minsize=minsize,
            maxsize=maxsize,
            connect_timeout=connect_timeout,
        ),
        engine=load_engine_config(),
    )
