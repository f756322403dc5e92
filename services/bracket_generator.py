# services/bracket_generator.py
from __future__ import annotations

import math
from typing import Any, Mapping, Optional, Sequence

from domain.enums import BracketKey, MatchStatus, Stage, TournamentFormat
from domain.errors import (
    InvalidConfigError,
    InvalidParticipantCountError,
    InvalidParticipantsError,
    UnsupportedFormatError,
)
from domain.models import FormatConfig, Match, Participant, SlotRef, match_code, match_id_for
from domain.seeding import next_power_of_two, seed_participants, seeded_positions, serpentine_groups

MIN_PARTICIPANTS = 2
MAX_PARTICIPANTS = 128

_CUSTOM_GROUP_BASES = ("group_stage", "mixed")
_CUSTOM_ELIMINATION_BASES = {
    "single_elimination": TournamentFormat.SINGLE,
    "double_elimination": TournamentFormat.DOUBLE,
}


# -------------------------
# Validation
# -------------------------

def parse_format(value: Any) -> TournamentFormat:
    if isinstance(value, TournamentFormat):
        return value
    try:
        return TournamentFormat(str(value or "").strip().lower())
    except ValueError as e:
        raise UnsupportedFormatError(f"Unsupported tournament format: {value!r}") from e


def resolve_format(fmt: TournamentFormat, config: FormatConfig) -> TournamentFormat:
    """
    Maps `custom` onto the path it delegates to. Other formats resolve to themselves.
    """
    if fmt != TournamentFormat.CUSTOM:
        return fmt

    base = config.custom_base
    if base is None:
        return TournamentFormat.SINGLE
    if base in _CUSTOM_GROUP_BASES:
        return TournamentFormat.GROUP_STAGE
    if base in _CUSTOM_ELIMINATION_BASES:
        return _CUSTOM_ELIMINATION_BASES[base]
    raise UnsupportedFormatError(f"Unsupported custom format base: {base!r}")


def validate_participants(
    participants: Sequence[Participant],
    *,
    min_count: int = MIN_PARTICIPANTS,
    max_count: int = MAX_PARTICIPANTS,
) -> None:
    n = len(participants)
    if n < min_count or n > max_count:
        raise InvalidParticipantCountError(
            f"Tournament requires between {min_count} and {max_count} participants, got {n}."
        )
    ids = [int(p.participant_id) for p in participants]
    if len(set(ids)) != len(ids):
        raise InvalidParticipantsError("Participant ids must be unique.")


def validate_group_config(participant_count: int, config: FormatConfig) -> None:
    groups = config.group_count
    if participant_count < 2 * groups:
        raise InvalidConfigError(
            f"{participant_count} participants cannot fill {groups} groups with at least 2 each."
        )
    if participant_count > groups * config.teams_per_group:
        raise InvalidConfigError(
            f"{participant_count} participants exceed {groups} groups of {config.teams_per_group}."
        )

    per_group = config.knockout_stage_teams
    if per_group:
        smallest = participant_count // groups
        if per_group > smallest:
            raise InvalidConfigError(
                f"knockout_stage_teams ({per_group}) exceeds the smallest group size ({smallest})."
            )
        if groups * per_group < 2:
            raise InvalidConfigError("Knockout stage needs at least 2 qualifiers.")


# -------------------------
# Public API
# -------------------------

def generate_bracket(
    tournament_id: int,
    participants: Sequence[Participant],
    format: TournamentFormat | str,
    config: FormatConfig | None = None,
    *,
    max_participants: int = MAX_PARTICIPANTS,
) -> list[Match]:
    """
    Builds the initial match graph. Pure: nothing is persisted here.

    Byes are resolved before returning, so round 1 bye matches come back completed
    and their winners already sit in their next-round slots.
    """
    config = config or FormatConfig()
    fmt = parse_format(format)
    validate_participants(participants, max_count=max_participants)
    effective = resolve_format(fmt, config)

    seeded = seed_participants(participants, config.seeding, rng_seed=config.rng_seed)
    entrants = [int(p.participant_id) for p in seeded]

    if effective == TournamentFormat.SINGLE:
        return build_single_elimination(tournament_id, entrants)
    if effective == TournamentFormat.DOUBLE:
        return build_double_elimination(tournament_id, entrants)
    if effective == TournamentFormat.ROUND_ROBIN:
        return build_round_robin(tournament_id, entrants)
    if effective == TournamentFormat.GROUP_STAGE:
        return build_group_stage(tournament_id, seeded, config)
    raise UnsupportedFormatError(f"Unsupported tournament format: {fmt.value!r}")


def build_single_elimination(
    tournament_id: int,
    entrants: Sequence[int],
    *,
    stage: Stage = Stage.BRACKET,
) -> list[Match]:
    return _settle(_winners_bracket(tournament_id, entrants, stage))


def build_double_elimination(tournament_id: int, entrants: Sequence[int]) -> list[Match]:
    """
    Winners bracket + losers bracket + grand final.

    Losers bracket for bracket size 2^n has 2(n-1) rounds:
      L1      losers of W1, paired off
      L(2k)   winners of L(2k-1) (slot 1) vs losers of W(k+1) (slot 2)
      L(2k+1) winners of L(2k), paired off
    Drop-in order from W(k+1) is reversed on odd k so early rematches are pushed back.
    The bracket reset is not pre-built; progression creates it if needed.
    """
    stage = Stage.BRACKET
    wb = _winners_bracket(tournament_id, entrants, stage)
    size = next_power_of_two(len(entrants))
    n = int(math.log2(size))
    wb_by_pos = {(m.round_no, m.match_no): m for m in wb}

    gf = Match(
        match_id=match_id_for(tournament_id, match_code(stage, BracketKey.GF, 1, 1)),
        tournament_id=tournament_id,
        stage=stage,
        round_no=1,
        match_no=1,
        bracket=BracketKey.GF,
    )
    wb_final = wb_by_pos[(n, 1)]
    wb_final.winner_advances_to = SlotRef(gf.match_id, 1)

    if n == 1:
        # two players: the loser of the only winners match goes straight to the grand final
        wb_final.loser_advances_to = SlotRef(gf.match_id, 2)
        return _settle(wb + [gf])

    def lid(r: int, j: int) -> str:
        return match_id_for(tournament_id, match_code(stage, BracketKey.L, r, j))

    lb_rounds = 2 * (n - 1)
    lb: list[Match] = []
    for r in range(1, lb_rounds + 1):
        for j in range(1, losers_round_size(size, r) + 1):
            lb.append(
                Match(
                    match_id=lid(r, j),
                    tournament_id=tournament_id,
                    stage=stage,
                    round_no=r,
                    match_no=j,
                    bracket=BracketKey.L,
                )
            )

    for j in range(1, size // 2 + 1):
        wb_by_pos[(1, j)].loser_advances_to = SlotRef(lid(1, (j + 1) // 2), 1 if j % 2 == 1 else 2)

    for k in range(1, n):
        wb_round = k + 1
        count = size >> wb_round
        for i in range(1, count + 1):
            target = count + 1 - i if k % 2 == 1 else i
            wb_by_pos[(wb_round, i)].loser_advances_to = SlotRef(lid(2 * k, target), 2)

    for m in lb:
        if m.round_no == lb_rounds:
            m.winner_advances_to = SlotRef(gf.match_id, 2)
        elif m.round_no % 2 == 1:
            m.winner_advances_to = SlotRef(lid(m.round_no + 1, m.match_no), 1)
        else:
            m.winner_advances_to = SlotRef(
                lid(m.round_no + 1, (m.match_no + 1) // 2),
                1 if m.match_no % 2 == 1 else 2,
            )

    return _settle(wb + lb + [gf])


def losers_round_size(bracket_size: int, lb_round: int) -> int:
    k = lb_round // 2
    if lb_round % 2 == 0:
        return bracket_size >> (k + 1)
    return bracket_size >> (k + 2)


def build_round_robin(
    tournament_id: int,
    entrants: Sequence[int],
    *,
    stage: Stage = Stage.ROUND_ROBIN,
    group: Optional[str] = None,
) -> list[Match]:
    matches: list[Match] = []
    for round_no, pairs in enumerate(circle_rounds(entrants), start=1):
        for match_no, (p1, p2) in enumerate(pairs, start=1):
            matches.append(
                Match(
                    match_id=match_id_for(tournament_id, match_code(stage, None, round_no, match_no, group)),
                    tournament_id=tournament_id,
                    stage=stage,
                    round_no=round_no,
                    match_no=match_no,
                    group=group,
                    player1_id=p1,
                    player2_id=p2,
                    status=MatchStatus.READY,
                )
            )
    return matches


def circle_rounds(entrants: Sequence[int]) -> list[list[tuple[int, int]]]:
    """
    Circle method: the first entrant stays put, everyone else rotates one place per round.
    An odd field gets a phantom opponent; whoever draws it sits the round out.
    """
    players: list[Optional[int]] = list(entrants)
    if len(players) % 2 == 1:
        players.append(None)
    n = len(players)

    rounds: list[list[tuple[int, int]]] = []
    for r in range(n - 1):
        pairs: list[tuple[int, int]] = []
        for i in range(n // 2):
            a, b = players[i], players[n - 1 - i]
            if a is None or b is None:
                continue
            if i == 0 and r % 2 == 1:
                # alternate the fixed entrant between slots
                a, b = b, a
            pairs.append((a, b))
        rounds.append(pairs)
        players = [players[0], players[-1]] + players[1:-1]
    return rounds


def build_group_stage(
    tournament_id: int,
    seeded: Sequence[Participant],
    config: FormatConfig,
) -> list[Match]:
    validate_group_config(len(seeded), config)
    groups = serpentine_groups(seeded, config.group_count)

    matches: list[Match] = []
    for label, members in groups.items():
        matches.extend(
            build_round_robin(
                tournament_id,
                [int(p.participant_id) for p in members],
                stage=Stage.GROUP,
                group=label,
            )
        )
    return matches


def knockout_entrants(tables: Mapping[str, Sequence[int]], per_group: int) -> list[int]:
    """
    All group winners first (A, B, ...), then all runners-up, and so on.
    With standard seeding this keeps group mates apart until as late as possible.
    """
    labels = sorted(tables, key=lambda g: (len(g), g))
    out: list[int] = []
    for place in range(per_group):
        for label in labels:
            table = tables[label]
            if place < len(table):
                out.append(int(table[place]))
    return out


def build_knockout(tournament_id: int, tables: Mapping[str, Sequence[int]], per_group: int) -> list[Match]:
    entrants = knockout_entrants(tables, per_group)
    if len(entrants) < 2:
        raise InvalidConfigError("Knockout stage needs at least 2 qualifiers.")
    return build_single_elimination(tournament_id, entrants, stage=Stage.KNOCKOUT)


def group_assignments(matches: Sequence[Match]) -> dict[int, str]:
    out: dict[int, str] = {}
    for m in matches:
        if m.stage != Stage.GROUP or m.group is None:
            continue
        for pid in m.players:
            if pid is not None:
                out[pid] = m.group
    return out


# -------------------------
# Internals
# -------------------------

def _winners_bracket(tournament_id: int, entrants: Sequence[int], stage: Stage) -> list[Match]:
    size = next_power_of_two(len(entrants))
    rounds = int(math.log2(size))
    positions = seeded_positions(size)

    def mid(r: int, j: int) -> str:
        return match_id_for(tournament_id, match_code(stage, BracketKey.W, r, j))

    def entrant(seed: int) -> Optional[int]:
        return entrants[seed - 1] if seed <= len(entrants) else None

    matches: list[Match] = []
    for r in range(1, rounds + 1):
        for j in range(1, (size >> r) + 1):
            m = Match(
                match_id=mid(r, j),
                tournament_id=tournament_id,
                stage=stage,
                round_no=r,
                match_no=j,
                bracket=BracketKey.W,
            )
            if r == 1:
                m.player1_id = entrant(positions[2 * j - 2])
                m.player2_id = entrant(positions[2 * j - 1])
            if r < rounds:
                m.winner_advances_to = SlotRef(mid(r + 1, (j + 1) // 2), 1 if j % 2 == 1 else 2)
            matches.append(m)
    return matches


def _settle(matches: list[Match]) -> list[Match]:
    """
    Resolves byes. `matches` must be in feed order (every match after the matches feeding it).

    A slot is live if a participant can ever reach it: a winner feed is live when either
    source slot is live, a loser feed only when both are (a bye has no loser).
    """
    by_id = {m.match_id: m for m in matches}
    live: dict[tuple[str, int], bool] = {}
    for m in matches:
        for slot in (1, 2):
            if m.player_in_slot(slot) is not None:
                live[(m.match_id, slot)] = True

    for m in matches:
        a1 = live.get((m.match_id, 1), False)
        a2 = live.get((m.match_id, 2), False)
        if m.winner_advances_to is not None:
            ref = m.winner_advances_to
            live[(ref.match_id, ref.slot)] = a1 or a2
        if m.loser_advances_to is not None:
            ref = m.loser_advances_to
            live[(ref.match_id, ref.slot)] = a1 and a2

    for m in matches:
        a1 = live.get((m.match_id, 1), False)
        a2 = live.get((m.match_id, 2), False)
        m.is_bye = not (a1 and a2)

        if not a1 and not a2:
            # unreachable: voided
            m.status = MatchStatus.COMPLETED
            continue

        if m.is_bye:
            present = m.player1_id if a1 else m.player2_id
            if present is None:
                continue
            m.status = MatchStatus.COMPLETED
            m.winner_id = present
            if m.winner_advances_to is not None:
                target = by_id[m.winner_advances_to.match_id]
                setattr(target, m.winner_advances_to.column, present)
            continue

        if m.has_both_players():
            m.status = MatchStatus.READY

    return matches
