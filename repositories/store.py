# repositories/store.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence

from domain.enums import BracketKey, MatchStatus, Stage, TournamentStatus
from domain.models import LogEntry, Match, Participant, Tournament

# Columns ConditionalUpdateMatch may write. Anything else is a programming error.
UPDATABLE_MATCH_FIELDS = frozenset(
    {
        "status",
        "player1_id",
        "player2_id",
        "winner_id",
        "loser_id",
        "player1_score",
        "player2_score",
        "reported_by",
        "completed_at",
        "is_bye",
        "deadline",
        "player1_submitted_at",
        "player2_submitted_at",
    }
)

SLOT_FIELDS = frozenset({"player1_id", "player2_id"})


def check_update_fields(fields: Mapping[str, Any], require_empty: Sequence[str]) -> None:
    unknown = set(fields) - UPDATABLE_MATCH_FIELDS
    if unknown:
        raise ValueError(f"Cannot update match fields: {sorted(unknown)}")
    bad = set(require_empty) - SLOT_FIELDS
    if bad:
        raise ValueError(f"require_empty only supports slot fields, got: {sorted(bad)}")


class EntityStore(Protocol):
    """
    Storage consumed by the engine. Every mutation of a match goes through
    conditional_update_match, which is atomic for a single row.
    """

    async def get_tournament(self, *, tournament_id: int) -> Optional[Tournament]: ...

    async def save_tournament(self, tournament: Tournament) -> None: ...

    async def update_tournament_status(self, *, tournament_id: int, status: TournamentStatus) -> None: ...

    async def conditional_update_tournament_status(
        self,
        *,
        tournament_id: int,
        expected_status: TournamentStatus,
        status: TournamentStatus,
    ) -> bool:
        """
        Moves the tournament to `status` only if it is still `expected_status`.
        Exactly one of several racing callers gets True.
        """
        ...

    async def insert_participants(self, *, tournament_id: int, participants: Sequence[Participant]) -> None: ...

    async def list_participants(self, *, tournament_id: int) -> list[Participant]: ...

    async def get_match(self, *, match_id: str) -> Optional[Match]: ...

    async def conditional_update_match(
        self,
        *,
        match_id: str,
        expected_status: MatchStatus,
        fields: Mapping[str, Any],
        require_empty: Sequence[str] = (),
    ) -> bool:
        """
        Applies `fields` only if the row still has `expected_status` and every column in
        `require_empty` is NULL. Returns False when the condition no longer holds.
        """
        ...

    async def insert_matches(self, matches: Sequence[Match]) -> list[str]:
        """
        Inserts a batch. Rows whose id already exists are skipped; returns the ids inserted.
        """
        ...

    async def list_matches(
        self,
        *,
        tournament_id: int,
        stage: Optional[Stage] = None,
        bracket: Optional[BracketKey] = None,
        status: Optional[MatchStatus] = None,
        group: Optional[str] = None,
    ) -> list[Match]: ...

    async def append_log(self, entry: LogEntry) -> None: ...

    async def list_logs(self, *, tournament_id: int) -> list[LogEntry]: ...
