# domain/errors.py
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from domain.models import Match


class EngineError(Exception):
    pass


# -------------------------
# Validation: rejected before any write, safe to retry with corrected input
# -------------------------

class ValidationError(EngineError):
    pass


class InvalidParticipantCountError(ValidationError):
    pass


class InvalidParticipantsError(ValidationError):
    pass


class UnsupportedFormatError(ValidationError):
    pass


class InvalidConfigError(ValidationError):
    pass


class InvalidWinnerError(ValidationError):
    pass


class MatchNotReadyError(ValidationError):
    pass


class InvalidResultError(ValidationError):
    pass


class TournamentClosedError(ValidationError):
    pass


# -------------------------
# Conflicts: the desired end state already holds (or is owned by someone else)
# -------------------------

class ConflictError(EngineError):
    pass


class AlreadyCompletedError(ConflictError):
    def __init__(self, message: str, *, match: Optional["Match"] = None) -> None:
        super().__init__(message)
        self.match = match


class BracketAlreadyExistsError(ConflictError):
    pass


class MatchStatusConflictError(ConflictError):
    pass


# -------------------------
# Not found
# -------------------------

class NotFoundError(EngineError):
    pass


class MatchNotFoundError(NotFoundError):
    pass


class TournamentNotFoundError(NotFoundError):
    pass


# -------------------------
# Partial success
# -------------------------

class AdvancementError(EngineError):
    """
    The match result is durably recorded but routing to the next slot failed.
    `match` is the completed match; operators re-link the bracket manually.
    """

    def __init__(self, message: str, *, match: "Match", winner_id: Optional[int]) -> None:
        super().__init__(message)
        self.match = match
        self.winner_id = winner_id
