# domain/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from domain.enums import BracketKey, MatchStatus, SeedingMode, Stage, TournamentFormat, TournamentStatus
from domain.errors import InvalidConfigError, InvalidResultError

_BRACKET_LETTER = {BracketKey.W: "W", BracketKey.L: "L", BracketKey.GF: "GF"}


def match_code(
    stage: Stage,
    bracket: Optional[BracketKey],
    round_no: int,
    match_no: int,
    group: Optional[str] = None,
) -> str:
    """
    W1-01, L2-03, GF-01 (grand final), GF-02 (bracket reset),
    RR1-02, GA3-01 (group A), K1-01 (group stage knockout)
    """
    if stage == Stage.ROUND_ROBIN:
        return f"RR{round_no}-{match_no:02d}"
    if stage == Stage.GROUP:
        return f"G{group}{round_no}-{match_no:02d}"
    if stage == Stage.KNOCKOUT:
        return f"K{round_no}-{match_no:02d}"
    if bracket == BracketKey.GF:
        return f"GF-{round_no:02d}"
    return f"{_BRACKET_LETTER[bracket or BracketKey.W]}{round_no}-{match_no:02d}"


def match_id_for(tournament_id: int, code: str) -> str:
    return f"{int(tournament_id)}:{code}"


@dataclass(frozen=True)
class SlotRef:
    match_id: str
    slot: int  # 1|2

    @property
    def column(self) -> str:
        return f"player{self.slot}_id"


@dataclass(frozen=True)
class Participant:
    participant_id: int
    seed: Optional[int] = None
    name: Optional[str] = None
    skill_rating: Optional[float] = None
    group: Optional[str] = None


def _int_field(data: Mapping[str, Any], key: str, default: int, *, minimum: int) -> int:
    v = data.get(key)
    if v is None:
        return default
    if isinstance(v, bool):
        raise InvalidConfigError(f"{key} must be an integer, got: {v!r}")
    try:
        out = int(v)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"{key} must be an integer, got: {v!r}") from e
    if out < minimum:
        raise InvalidConfigError(f"{key} must be >= {minimum}")
    return out


_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def _bool_field(data: Mapping[str, Any], key: str, default: bool) -> bool:
    v = data.get(key)
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, int) and v in (0, 1):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
    raise InvalidConfigError(f"{key} must be true or false, got: {v!r}")


@dataclass(frozen=True)
class FormatConfig:
    group_count: int = 4
    teams_per_group: int = 4
    knockout_stage_teams: int = 2     # 0 = groups only, no playoff
    points_per_win: int = 3
    track_scores: bool = False        # adds goal difference / goals for to table ordering
    head_to_head: bool = True
    seeding: SeedingMode = SeedingMode.STANDARD
    rng_seed: Optional[int] = None
    custom_base: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, *, base: "FormatConfig | None" = None) -> "FormatConfig":
        base = base or cls()
        data = dict(data or {})

        seeding_raw = data.get("seeding", data.get("bracket_type"))
        if seeding_raw is None:
            seeding = base.seeding
        else:
            try:
                seeding = SeedingMode(str(seeding_raw).strip().lower())
            except ValueError as e:
                raise InvalidConfigError(f"Unknown seeding mode: {seeding_raw!r}") from e

        rng_seed = base.rng_seed
        if data.get("rng_seed") is not None:
            rng_seed = _int_field(data, "rng_seed", 0, minimum=-(2**63))

        custom_base = data.get("custom_base", base.custom_base)
        if custom_base is not None:
            custom_base = str(custom_base).strip().lower()

        return replace(
            base,
            group_count=_int_field(data, "group_count", base.group_count, minimum=1),
            teams_per_group=_int_field(data, "teams_per_group", base.teams_per_group, minimum=2),
            knockout_stage_teams=_int_field(data, "knockout_stage_teams", base.knockout_stage_teams, minimum=0),
            points_per_win=_int_field(data, "points_per_win", base.points_per_win, minimum=0),
            track_scores=_bool_field(data, "track_scores", base.track_scores),
            head_to_head=_bool_field(data, "head_to_head", base.head_to_head),
            seeding=seeding,
            rng_seed=rng_seed,
            custom_base=custom_base,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["seeding"] = self.seeding.value
        return d


@dataclass
class Tournament:
    tournament_id: int
    format: TournamentFormat
    participant_count: int = 0
    status: TournamentStatus = TournamentStatus.UPCOMING
    config: FormatConfig = field(default_factory=FormatConfig)


@dataclass
class Match:
    match_id: str
    tournament_id: int
    stage: Stage
    round_no: int
    match_no: int
    bracket: Optional[BracketKey] = None
    group: Optional[str] = None

    player1_id: Optional[int] = None
    player2_id: Optional[int] = None
    winner_id: Optional[int] = None
    loser_id: Optional[int] = None
    status: MatchStatus = MatchStatus.PENDING

    # one of the two slots can never be filled (or neither: voided at generation)
    is_bye: bool = False

    winner_advances_to: Optional[SlotRef] = None
    loser_advances_to: Optional[SlotRef] = None

    player1_score: Optional[int] = None
    player2_score: Optional[int] = None
    reported_by: Optional[int] = None
    completed_at: Optional[datetime] = None

    # round deadline; past it, a side that has not reported forfeits
    deadline: Optional[datetime] = None
    player1_submitted_at: Optional[datetime] = None
    player2_submitted_at: Optional[datetime] = None

    @property
    def code(self) -> str:
        return match_code(self.stage, self.bracket, self.round_no, self.match_no, self.group)

    @property
    def players(self) -> tuple[Optional[int], Optional[int]]:
        return (self.player1_id, self.player2_id)

    @property
    def is_completed(self) -> bool:
        return self.status == MatchStatus.COMPLETED

    @property
    def is_played(self) -> bool:
        """Completed with two real participants (byes and voided matches excluded)."""
        return self.is_completed and self.player1_id is not None and self.player2_id is not None

    def has_both_players(self) -> bool:
        return self.player1_id is not None and self.player2_id is not None

    def player_in_slot(self, slot: int) -> Optional[int]:
        return self.player1_id if slot == 1 else self.player2_id

    def slot_of(self, participant_id: int) -> Optional[int]:
        if participant_id == self.player1_id:
            return 1
        if participant_id == self.player2_id:
            return 2
        return None

    def submitted(self, slot: int) -> bool:
        return (self.player1_submitted_at if slot == 1 else self.player2_submitted_at) is not None

    def opponent_of(self, participant_id: int) -> Optional[int]:
        if participant_id == self.player1_id:
            return self.player2_id
        if participant_id == self.player2_id:
            return self.player1_id
        return None

    def score_for(self, participant_id: int) -> Optional[int]:
        if participant_id == self.player1_id:
            return self.player1_score
        if participant_id == self.player2_id:
            return self.player2_score
        return None

    def copy(self) -> "Match":
        return replace(self)


@dataclass(frozen=True)
class RankedParticipant:
    participant_id: int
    position: int
    seed: Optional[int] = None
    name: Optional[str] = None
    group: Optional[str] = None

    points: int = 0
    wins: int = 0
    losses: int = 0
    matches_played: int = 0
    goals_for: int = 0
    goals_against: int = 0

    status: str = "active"  # active|eliminated|champion
    current_round: int = 0
    current_bracket: Optional[BracketKey] = None
    # comparable across winners/losers brackets; current_round is per bracket
    progress: int = 0
    eliminated_in_round: Optional[int] = None

    @property
    def goal_difference(self) -> int:
        return self.goals_for - self.goals_against


@dataclass(frozen=True)
class AdvanceResult:
    match: Match
    tournament_complete: bool
    next_match: Optional[Match] = None
    created_matches: tuple[Match, ...] = ()
    champion_id: Optional[int] = None


@dataclass(frozen=True)
class LogEntry:
    tournament_id: int
    action: str
    description: str
    match_id: Optional[str] = None
    participant_id: Optional[int] = None
    metadata: Optional[Mapping[str, Any]] = None


def _optional_score(payload: Mapping[str, Any], key: str) -> Optional[int]:
    v = payload.get(key)
    if v is None:
        return None
    if isinstance(v, bool):
        raise InvalidResultError(f"{key} must be a non-negative integer.")
    try:
        score = int(v)
    except (TypeError, ValueError) as e:
        raise InvalidResultError(f"{key} must be a non-negative integer.") from e
    if score < 0:
        raise InvalidResultError(f"{key} must be a non-negative integer.")
    return score


@dataclass(frozen=True)
class MatchResultSubmission:
    """
    Validated result report. Built from raw request bodies with from_payload().
    """

    match_id: str
    winner_id: int
    player1_score: Optional[int] = None
    player2_score: Optional[int] = None
    reported_by: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MatchResultSubmission":
        if not isinstance(payload, Mapping):
            raise InvalidResultError("Result payload must be an object.")

        match_id = str(payload.get("match_id") or "").strip()
        if not match_id:
            raise InvalidResultError("match_id is required.")

        raw_winner = payload.get("winner_id")
        if raw_winner is None or isinstance(raw_winner, bool):
            raise InvalidResultError("winner_id is required.")
        try:
            winner_id = int(raw_winner)
        except (TypeError, ValueError) as e:
            raise InvalidResultError(f"winner_id must be an integer, got: {raw_winner!r}") from e

        reported_by = payload.get("reported_by")
        if reported_by is not None:
            try:
                reported_by = int(reported_by)
            except (TypeError, ValueError) as e:
                raise InvalidResultError("reported_by must be an integer.") from e

        notes = payload.get("notes")
        if notes is not None:
            notes = str(notes)[:500]

        return cls(
            match_id=match_id,
            winner_id=winner_id,
            player1_score=_optional_score(payload, "player1_score"),
            player2_score=_optional_score(payload, "player2_score"),
            reported_by=reported_by,
            notes=notes,
        )
