# services/standings_service.py
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from domain.enums import BracketKey, Stage, TournamentFormat, TournamentStatus
from domain.errors import TournamentNotFoundError
from domain.models import FormatConfig, Match, Participant, RankedParticipant, Tournament
from repositories.store import EntityStore
from services.bracket_generator import group_assignments, resolve_format


@dataclass
class _Line:
    participant_id: int
    seed: Optional[int]
    name: Optional[str]
    group: Optional[str] = None
    wins: int = 0
    losses: int = 0
    played: int = 0
    goals_for: int = 0
    goals_against: int = 0

    # elimination only
    reached: int = 0
    current_round: int = 0
    current_bracket: Optional[BracketKey] = None
    eliminated_in_round: Optional[int] = None

    def seed_key(self) -> tuple:
        return (self.seed is None, self.seed or 0, self.participant_id)


def _lines(participants: Sequence[Participant], matches: Sequence[Match]) -> dict[int, _Line]:
    lines = {
        int(p.participant_id): _Line(int(p.participant_id), p.seed, p.name, p.group)
        for p in participants
    }
    # participants only known from match rows still get a line
    for m in matches:
        for pid in m.players:
            if pid is not None and pid not in lines:
                lines[pid] = _Line(pid, None, None)
    return lines


def _loser_of(m: Match) -> Optional[int]:
    if m.loser_id is not None:
        return m.loser_id
    return m.opponent_of(m.winner_id) if m.winner_id is not None else None


# -------------------------
# Round robin / group tables
# -------------------------

def table_standings(
    participants: Sequence[Participant],
    matches: Sequence[Match],
    config: FormatConfig,
) -> list[RankedParticipant]:
    """
    Orders a round robin table: points, wins, fewer losses, then (when scores are tracked)
    goal difference and goals for, then head-to-head between exactly two tied entrants,
    then seed.
    """
    lines = _lines(participants, matches)
    head_to_head: dict[tuple[int, int], int] = defaultdict(int)

    for m in matches:
        if m.is_played and m.winner_id is None:
            # double forfeit counts as a loss for both
            for pid in m.players:
                lines[pid].losses += 1
                lines[pid].played += 1
            continue
        if not m.is_played or m.winner_id is None:
            continue
        w, lo = m.winner_id, _loser_of(m)
        lines[w].wins += 1
        lines[w].played += 1
        if lo is not None:
            lines[lo].losses += 1
            lines[lo].played += 1
            head_to_head[(w, lo)] += 1

        if m.player1_score is not None and m.player2_score is not None:
            for pid, own, other in (
                (m.player1_id, m.player1_score, m.player2_score),
                (m.player2_id, m.player2_score, m.player1_score),
            ):
                lines[pid].goals_for += own
                lines[pid].goals_against += other

    def primary(ln: _Line) -> tuple:
        key: tuple = (-ln.wins * config.points_per_win, -ln.wins, ln.losses)
        if config.track_scores:
            key += (-(ln.goals_for - ln.goals_against), -ln.goals_for)
        return key

    ordered = sorted(lines.values(), key=lambda ln: (primary(ln), ln.seed_key()))

    if config.head_to_head:
        i = 0
        while i < len(ordered):
            j = i
            while j + 1 < len(ordered) and primary(ordered[j + 1]) == primary(ordered[i]):
                j += 1
            if j == i + 1:
                a, b = ordered[i], ordered[j]
                if head_to_head[(b.participant_id, a.participant_id)] > head_to_head[(a.participant_id, b.participant_id)]:
                    ordered[i], ordered[j] = b, a
            i = j + 1

    return [
        RankedParticipant(
            participant_id=ln.participant_id,
            position=pos,
            seed=ln.seed,
            name=ln.name,
            group=ln.group,
            points=ln.wins * config.points_per_win,
            wins=ln.wins,
            losses=ln.losses,
            matches_played=ln.played,
            goals_for=ln.goals_for,
            goals_against=ln.goals_against,
        )
        for pos, ln in enumerate(ordered, start=1)
    ]


def group_tables(
    participants: Sequence[Participant],
    matches: Sequence[Match],
    config: FormatConfig,
) -> dict[str, list[RankedParticipant]]:
    group_matches = [m for m in matches if m.stage == Stage.GROUP]
    assigned = group_assignments(group_matches)

    members: dict[str, list[Participant]] = defaultdict(list)
    for p in participants:
        g = p.group or assigned.get(int(p.participant_id))
        if g is not None:
            members[g].append(p)

    out: dict[str, list[RankedParticipant]] = {}
    for label in sorted(members, key=lambda g: (len(g), g)):
        in_group = [m for m in group_matches if m.group == label]
        out[label] = table_standings(members[label], in_group, config)
    return out


# -------------------------
# Elimination
# -------------------------

def _progress_fn(matches: Sequence[Match], double: bool):
    """
    Monotone 'how far did this match sit in the bracket' measure.
    Double elimination interleaves: W(k) ~ 2k-1, L(r) ~ r+1, grand final after both.
    """
    if not double:
        return lambda m: m.round_no

    wb_rounds = max((m.round_no for m in matches if m.bracket == BracketKey.W), default=1)

    def progress(m: Match) -> int:
        if m.bracket == BracketKey.W:
            return 2 * m.round_no - 1
        if m.bracket == BracketKey.L:
            return m.round_no + 1
        return 2 * wb_rounds - 1 + m.round_no

    return progress


def elimination_standings(
    participants: Sequence[Participant],
    matches: Sequence[Match],
    *,
    double: bool = False,
    tournament_complete: bool = False,
) -> list[RankedParticipant]:
    """
    Ranks by progress reached (winning a match counts as reaching past it), then wins,
    then fewer losses, then seed. A loss eliminates unless the match routes its loser
    onwards, or it is the first grand final lost by the winners bracket champion.
    """
    lines = _lines(participants, matches)
    progress = _progress_fn(matches, double)

    for m in matches:
        for pid in m.players:
            if pid is None:
                continue
            ln = lines[pid]
            reach = progress(m) + (1 if m.is_completed and m.winner_id == pid else 0)
            # later matches win ties: entering L2 after winning L1 is the same progress
            if reach >= ln.reached:
                ln.reached = reach
                ln.current_round = m.round_no
                ln.current_bracket = m.bracket

        if m.is_played and m.winner_id is None:
            for pid in m.players:
                lines[pid].losses += 1
                lines[pid].played += 1
                lines[pid].eliminated_in_round = m.round_no
            continue
        if not m.is_played or m.winner_id is None:
            continue
        w, lo = m.winner_id, _loser_of(m)
        lines[w].wins += 1
        lines[w].played += 1
        if lo is None:
            continue
        lines[lo].losses += 1
        lines[lo].played += 1

        reset_pending = m.bracket == BracketKey.GF and m.round_no == 1 and lo == m.player1_id
        if m.loser_advances_to is None and not reset_pending:
            lines[lo].eliminated_in_round = m.round_no

    ordered = sorted(
        lines.values(),
        key=lambda ln: (-ln.reached, -ln.wins, ln.losses, ln.seed_key()),
    )

    active = [ln for ln in ordered if ln.eliminated_in_round is None]
    champion_id = active[0].participant_id if tournament_complete and len(active) == 1 else None

    out: list[RankedParticipant] = []
    for pos, ln in enumerate(ordered, start=1):
        if ln.participant_id == champion_id:
            status = "champion"
        elif ln.eliminated_in_round is not None:
            status = "eliminated"
        else:
            status = "active"
        out.append(
            RankedParticipant(
                participant_id=ln.participant_id,
                position=pos,
                seed=ln.seed,
                name=ln.name,
                group=ln.group,
                wins=ln.wins,
                losses=ln.losses,
                matches_played=ln.played,
                status=status,
                current_round=ln.current_round,
                current_bracket=ln.current_bracket,
                progress=ln.reached,
                eliminated_in_round=ln.eliminated_in_round,
            )
        )
    return out


def knockout_standings(
    participants: Sequence[Participant],
    matches: Sequence[Match],
    *,
    tournament_complete: bool = False,
) -> list[RankedParticipant]:
    knockout = [m for m in matches if m.stage == Stage.KNOCKOUT]
    if not knockout:
        return []
    qualifiers = {pid for m in knockout for pid in m.players if pid is not None}
    return elimination_standings(
        [p for p in participants if int(p.participant_id) in qualifiers],
        knockout,
        tournament_complete=tournament_complete,
    )


def group_stage_standings(
    participants: Sequence[Participant],
    matches: Sequence[Match],
    config: FormatConfig,
    *,
    tournament_complete: bool = False,
) -> list[RankedParticipant]:
    """
    Before the knockout exists: the group tables one after another, positions within
    each group. Once it exists: knockout standings first, then everyone who did not
    qualify, by group finish, points, wins and seed, numbered on from the qualifiers.
    """
    tables = group_tables(participants, matches, config)
    top = knockout_standings(participants, matches, tournament_complete=tournament_complete)
    if not top:
        return [row for rows in tables.values() for row in rows]

    qualified = {r.participant_id for r in top}
    rest = sorted(
        (row for rows in tables.values() for row in rows if row.participant_id not in qualified),
        key=lambda r: (r.position, -r.points, -r.wins, r.losses, r.seed is None, r.seed or 0, r.participant_id),
    )
    return top + [
        replace(r, position=len(top) + i, status="eliminated")
        for i, r in enumerate(rest, start=1)
    ]


def compute_standings(
    tournament: Tournament,
    participants: Sequence[Participant],
    matches: Sequence[Match],
) -> list[RankedParticipant]:
    fmt = resolve_format(tournament.format, tournament.config)
    complete = tournament.status == TournamentStatus.COMPLETED

    if fmt == TournamentFormat.ROUND_ROBIN:
        return table_standings(participants, matches, tournament.config)
    if fmt == TournamentFormat.GROUP_STAGE:
        return group_stage_standings(participants, matches, tournament.config, tournament_complete=complete)
    return elimination_standings(
        participants,
        matches,
        double=fmt == TournamentFormat.DOUBLE,
        tournament_complete=complete,
    )


class StandingsCalculator:
    """
    Derives rankings from the stored match log. Nothing here writes.
    """

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    async def _load(self, tournament_id: int) -> Tournament:
        t = await self._store.get_tournament(tournament_id=tournament_id)
        if t is None:
            raise TournamentNotFoundError(f"Tournament not found: {tournament_id}")
        return t

    async def get_standings(self, *, tournament_id: int) -> list[RankedParticipant]:
        t = await self._load(tournament_id)
        participants = await self._store.list_participants(tournament_id=tournament_id)
        matches = await self._store.list_matches(tournament_id=tournament_id)
        return compute_standings(t, participants, matches)

    async def get_group_tables(self, *, tournament_id: int) -> dict[str, list[RankedParticipant]]:
        t = await self._load(tournament_id)
        participants = await self._store.list_participants(tournament_id=tournament_id)
        matches = await self._store.list_matches(tournament_id=tournament_id, stage=Stage.GROUP)
        return group_tables(participants, matches, t.config)

    async def get_knockout_standings(self, *, tournament_id: int) -> list[RankedParticipant]:
        t = await self._load(tournament_id)
        matches = await self._store.list_matches(tournament_id=tournament_id, stage=Stage.KNOCKOUT)
        if not matches:
            return []
        participants = await self._store.list_participants(tournament_id=tournament_id)
        return knockout_standings(
            participants,
            matches,
            tournament_complete=t.status == TournamentStatus.COMPLETED,
        )
