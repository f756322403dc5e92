# repositories/memory_repo.py
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Mapping, Optional, Sequence

from domain.enums import BracketKey, MatchStatus, Stage, TournamentStatus
from domain.models import LogEntry, Match, Participant, Tournament
from repositories.store import check_update_fields

_BRACKET_ORDER = {BracketKey.W: 0, BracketKey.L: 1, BracketKey.GF: 2, None: 0}


def match_sort_key(m: Match) -> tuple:
    return (m.stage.value, m.group or "", _BRACKET_ORDER[m.bracket], m.round_no, m.match_no)


class InMemoryTournamentRepo:
    """
    Process-local EntityStore. Used by tests and local runs.

    Rows are copied on the way in and out, so callers never share state with the store.
    A single lock makes each call atomic, which is the same guarantee a single-row
    conditional UPDATE gives in MySQL.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tournaments: dict[int, Tournament] = {}
        self._participants: dict[int, dict[int, Participant]] = {}
        self._matches: dict[str, Match] = {}
        self._logs: list[LogEntry] = []

    # -------------------------
    # Tournaments
    # -------------------------

    async def get_tournament(self, *, tournament_id: int) -> Optional[Tournament]:
        t = self._tournaments.get(int(tournament_id))
        return replace(t) if t else None

    async def save_tournament(self, tournament: Tournament) -> None:
        async with self._lock:
            self._tournaments[int(tournament.tournament_id)] = replace(tournament)

    async def update_tournament_status(self, *, tournament_id: int, status: TournamentStatus) -> None:
        async with self._lock:
            t = self._tournaments.get(int(tournament_id))
            if t is not None:
                t.status = TournamentStatus(status)

    async def conditional_update_tournament_status(
        self,
        *,
        tournament_id: int,
        expected_status: TournamentStatus,
        status: TournamentStatus,
    ) -> bool:
        async with self._lock:
            t = self._tournaments.get(int(tournament_id))
            if t is None or t.status != TournamentStatus(expected_status):
                return False
            t.status = TournamentStatus(status)
            return True

    # -------------------------
    # Participants
    # -------------------------

    async def insert_participants(self, *, tournament_id: int, participants: Sequence[Participant]) -> None:
        async with self._lock:
            rows = self._participants.setdefault(int(tournament_id), {})
            for p in participants:
                rows[int(p.participant_id)] = p

    async def list_participants(self, *, tournament_id: int) -> list[Participant]:
        rows = list(self._participants.get(int(tournament_id), {}).values())
        rows.sort(key=lambda p: (p.seed is None, p.seed or 0, p.participant_id))
        return rows

    # -------------------------
    # Matches
    # -------------------------

    async def get_match(self, *, match_id: str) -> Optional[Match]:
        m = self._matches.get(match_id)
        return m.copy() if m else None

    async def conditional_update_match(
        self,
        *,
        match_id: str,
        expected_status: MatchStatus,
        fields: Mapping[str, Any],
        require_empty: Sequence[str] = (),
    ) -> bool:
        check_update_fields(fields, require_empty)
        async with self._lock:
            m = self._matches.get(match_id)
            if m is None or m.status != MatchStatus(expected_status):
                return False
            if any(getattr(m, col) is not None for col in require_empty):
                return False
            for k, v in fields.items():
                setattr(m, k, MatchStatus(v) if k == "status" else v)
            return True

    async def insert_matches(self, matches: Sequence[Match]) -> list[str]:
        inserted: list[str] = []
        async with self._lock:
            for m in matches:
                if m.match_id in self._matches:
                    continue
                self._matches[m.match_id] = m.copy()
                inserted.append(m.match_id)
        return inserted

    async def list_matches(
        self,
        *,
        tournament_id: int,
        stage: Optional[Stage] = None,
        bracket: Optional[BracketKey] = None,
        status: Optional[MatchStatus] = None,
        group: Optional[str] = None,
    ) -> list[Match]:
        out = [
            m.copy()
            for m in self._matches.values()
            if m.tournament_id == int(tournament_id)
            and (stage is None or m.stage == stage)
            and (bracket is None or m.bracket == bracket)
            and (status is None or m.status == status)
            and (group is None or m.group == group)
        ]
        out.sort(key=match_sort_key)
        return out

    # -------------------------
    # Audit log
    # -------------------------

    async def append_log(self, entry: LogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)

    async def list_logs(self, *, tournament_id: int) -> list[LogEntry]:
        return [e for e in self._logs if e.tournament_id == int(tournament_id)]
