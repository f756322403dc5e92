# tests/conftest.py
from __future__ import annotations

from typing import Optional

import pytest

from config import EngineConfig
from domain.enums import MatchStatus
from domain.models import Participant
from repositories.memory_repo import InMemoryTournamentRepo
from services.engine import BracketEngine


def make_players(n: int, *, start: int = 1) -> list[Participant]:
    """Participants with ids start..start+n-1, listed in seed order."""
    return [Participant(participant_id=i, name=f"player-{i}") for i in range(start, start + n)]


async def play_out(engine: BracketEngine, tournament_id: int, *, winner=min) -> list:
    """
    Reports every ready match until none are left. By default the lower id wins,
    which with make_players() means the better seed always wins.
    """
    results = []
    while True:
        ready = await engine.list_ready_matches(tournament_id=tournament_id)
        if not ready:
            return results
        for m in ready:
            results.append(
                await engine.advance_winner(match_id=m.match_id, winner_id=winner(m.player1_id, m.player2_id))
            )


async def match_by_code(engine: BracketEngine, tournament_id: int, code: str):
    return await engine.store.get_match(match_id=f"{tournament_id}:{code}")


def statuses(matches) -> dict[MatchStatus, int]:
    out: dict[MatchStatus, int] = {}
    for m in matches:
        out[m.status] = out.get(m.status, 0) + 1
    return out


@pytest.fixture
def store() -> InMemoryTournamentRepo:
    return InMemoryTournamentRepo()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def engine(store: InMemoryTournamentRepo, engine_config: EngineConfig) -> BracketEngine:
    return BracketEngine(store, engine_config)


@pytest.fixture
def players():
    return make_players
