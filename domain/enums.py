# domain/enums.py
from __future__ import annotations

from enum import Enum


class TournamentFormat(str, Enum):
    SINGLE = "single_elimination"
    DOUBLE = "double_elimination"
    ROUND_ROBIN = "round_robin"
    GROUP_STAGE = "group_stage"
    CUSTOM = "custom"


class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    PENDING = "pending"     # at least one slot still empty
    READY = "ready"         # both slots filled
    ONGOING = "ongoing"
    COMPLETED = "completed"


class BracketKey(str, Enum):
    W = "winners"
    L = "losers"
    GF = "grand_final"


class Stage(str, Enum):
    BRACKET = "bracket"           # single / double elimination
    ROUND_ROBIN = "round_robin"
    GROUP = "group"
    KNOCKOUT = "knockout"         # group stage playoff


class SeedingMode(str, Enum):
    STANDARD = "standard"
    SEEDED = "seeded"     # by skill rating
    RANDOM = "random"
