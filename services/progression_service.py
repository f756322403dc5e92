# services/progression_service.py
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from domain.enums import BracketKey, MatchStatus, Stage, TournamentStatus
from domain.errors import (
    AdvancementError,
    AlreadyCompletedError,
    InvalidParticipantsError,
    InvalidResultError,
    InvalidWinnerError,
    MatchNotFoundError,
    MatchNotReadyError,
    MatchStatusConflictError,
    TournamentClosedError,
    TournamentNotFoundError,
)
from domain.models import AdvanceResult, LogEntry, Match, SlotRef, Tournament, match_code, match_id_for
from repositories.store import EntityStore
from services.bracket_generator import build_knockout
from services.standings_service import group_tables

log = logging.getLogger(__name__)

_ELIMINATION_STAGES = (Stage.BRACKET, Stage.KNOCKOUT)


class BracketLinkError(Exception):
    """Downstream pointer is missing or the slot it names is unusable."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


class ProgressionEngine:
    """
    Records results and moves participants along winner/loser pointers.

    Every write is a conditional update keyed on the status the caller last saw, so
    concurrent or duplicated reports for the same match complete it exactly once.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        cas_retries: int = 3,
        round_deadline: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cas_retries = max(1, int(cas_retries))
        self._round_deadline = round_deadline
        self._clock = clock

    # -------------------------
    # Public API
    # -------------------------

    async def start_match(self, *, match_id: str) -> Match:
        m = await self._load_match(match_id)
        for _ in range(self._cas_retries):
            if m.status == MatchStatus.ONGOING:
                return m
            if m.is_completed:
                raise AlreadyCompletedError(f"Match {m.code} is already completed.", match=m)
            if m.status != MatchStatus.READY:
                raise MatchNotReadyError(f"Match {m.code} is not ready to start.")

            ok = await self._store.conditional_update_match(
                match_id=m.match_id,
                expected_status=MatchStatus.READY,
                fields={"status": MatchStatus.ONGOING},
            )
            if ok:
                return replace(m, status=MatchStatus.ONGOING)
            m = await self._load_match(match_id)

        raise MatchStatusConflictError(f"Match {m.code} kept changing status; try again.")

    async def advance_winner(
        self,
        *,
        match_id: str,
        winner_id: int,
        player1_score: Optional[int] = None,
        player2_score: Optional[int] = None,
        reported_by: Optional[int] = None,
    ) -> AdvanceResult:
        match = await self._load_match(match_id)
        tournament = await self._store.get_tournament(tournament_id=match.tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(f"Tournament not found: {match.tournament_id}")
        if tournament.status == TournamentStatus.CANCELLED:
            raise TournamentClosedError(f"Tournament {tournament.tournament_id} is cancelled.")

        completed = await self._record_result(
            match,
            int(winner_id),
            player1_score=player1_score,
            player2_score=player2_score,
            reported_by=reported_by,
        )
        log.info("Match %s won by %s", completed.match_id, completed.winner_id)

        try:
            return await self._progress(tournament, completed)
        except Exception as e:
            raise AdvancementError(
                f"Result for {completed.code} was recorded but advancing failed: {e}",
                match=completed,
                winner_id=int(winner_id),
            ) from e

    # -------------------------
    # Deadlines and forfeits
    # -------------------------

    async def mark_submitted(self, *, match_id: str, participant_id: int) -> Match:
        """Notes that `participant_id` has sent in their result for the match."""
        m = await self._load_match(match_id)
        for _ in range(self._cas_retries):
            slot = m.slot_of(int(participant_id))
            if slot is None:
                raise InvalidParticipantsError(f"Participant {participant_id} is not playing in match {m.code}.")
            if m.is_completed:
                raise AlreadyCompletedError(f"Match {m.code} is already completed.", match=m)
            if m.submitted(slot):
                return m

            fields = {f"player{slot}_submitted_at": self._clock()}
            ok = await self._store.conditional_update_match(
                match_id=m.match_id,
                expected_status=m.status,
                fields=fields,
            )
            if ok:
                return replace(m, **fields)
            m = await self._load_match(match_id)

        raise MatchStatusConflictError(f"Match {m.code} kept changing status; try again.")

    async def set_round_deadlines(
        self,
        *,
        tournament_id: int,
        round_no: int,
        deadline: Optional[datetime] = None,
        stage: Optional[Stage] = None,
        bracket: Optional[BracketKey] = None,
    ) -> list[Match]:
        """
        Puts a deadline on every open match of a round (default: now + round_deadline).
        Completed matches are left alone. Returns the matches that got the deadline.
        """
        if await self._store.get_tournament(tournament_id=tournament_id) is None:
            raise TournamentNotFoundError(f"Tournament not found: {tournament_id}")

        due = _naive_utc(deadline) if deadline is not None else self._clock() + self._round_deadline
        matches = await self._store.list_matches(tournament_id=tournament_id, stage=stage, bracket=bracket)

        updated: list[Match] = []
        for m in matches:
            if m.round_no != round_no:
                continue
            for _ in range(self._cas_retries):
                if m.is_completed:
                    break
                ok = await self._store.conditional_update_match(
                    match_id=m.match_id,
                    expected_status=m.status,
                    fields={"deadline": due},
                )
                if ok:
                    updated.append(replace(m, deadline=due))
                    break
                m = await self._load_match(m.match_id)

        log.info("Round %s deadline %s set on %d matches (tournament %s)", round_no, due, len(updated), tournament_id)
        return updated

    async def process_deadline_forfeits(
        self,
        *,
        tournament_id: int,
        now: Optional[datetime] = None,
    ) -> list[AdvanceResult]:
        """
        Settles every ready/ongoing match whose deadline has passed. The side that sent
        in a result wins by forfeit; if neither did, both forfeit and the match completes
        without a winner. Matches where both sides reported are left for review.
        """
        tournament = await self._store.get_tournament(tournament_id=tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(f"Tournament not found: {tournament_id}")
        if tournament.status != TournamentStatus.ONGOING:
            return []

        cutoff = _naive_utc(now) if now is not None else self._clock()
        results: list[AdvanceResult] = []

        for m in await self._store.list_matches(tournament_id=tournament_id):
            if m.is_completed or m.deadline is None or m.deadline >= cutoff:
                continue
            if not m.has_both_players():
                continue
            p1, p2 = m.submitted(1), m.submitted(2)
            if p1 and p2:
                log.warning("Match %s is past its deadline with both results in; left for review", m.match_id)
                continue

            try:
                if p1 or p2:
                    winner_id = m.player1_id if p1 else m.player2_id
                    res = await self.advance_winner(match_id=m.match_id, winner_id=winner_id)
                    reason = f"Player {2 if p1 else 1} forfeit (missed deadline)"
                else:
                    res = await self._double_forfeit(tournament, m)
                    reason = "Both players forfeit (missed deadline)"
            except AlreadyCompletedError:
                # a result arrived while we were looking
                continue

            await self._append_log(
                tournament_id,
                "auto_forfeit",
                f"{m.code}: {reason}.",
                match_id=m.match_id,
                participant_id=res.match.winner_id,
                metadata={"deadline": m.deadline.isoformat()},
            )
            log.info("Match %s settled by forfeit (winner=%s)", m.match_id, res.match.winner_id)
            results.append(res)

        return results

    async def _double_forfeit(self, tournament: Tournament, match: Match) -> AdvanceResult:
        for _ in range(self._cas_retries):
            if match.is_completed:
                raise AlreadyCompletedError(f"Match {match.code} is already completed.", match=match)
            fields: dict[str, Any] = {"status": MatchStatus.COMPLETED, "completed_at": self._clock()}
            ok = await self._store.conditional_update_match(
                match_id=match.match_id,
                expected_status=match.status,
                fields=fields,
            )
            if ok:
                completed = replace(match, **fields)
                break
            match = await self._load_match(match.match_id)
        else:
            raise MatchStatusConflictError(f"Match {match.code} kept changing status; try again.")

        try:
            return await self._progress(tournament, completed)
        except Exception as e:
            raise AdvancementError(
                f"Double forfeit in {completed.code} was recorded but advancing failed: {e}",
                match=completed,
                winner_id=None,
            ) from e

    # -------------------------
    # Result recording
    # -------------------------

    async def _load_match(self, match_id: str) -> Match:
        m = await self._store.get_match(match_id=match_id)
        if m is None:
            raise MatchNotFoundError(f"Match not found: {match_id}")
        return m

    async def _record_result(
        self,
        match: Match,
        winner_id: int,
        *,
        player1_score: Optional[int],
        player2_score: Optional[int],
        reported_by: Optional[int],
    ) -> Match:
        for _ in range(self._cas_retries):
            if winner_id not in [p for p in match.players if p is not None]:
                raise InvalidWinnerError(
                    f"Participant {winner_id} is not playing in match {match.code}."
                )
            if match.is_completed:
                raise AlreadyCompletedError(f"Match {match.code} is already completed.", match=match)
            if not match.has_both_players():
                raise MatchNotReadyError(f"Match {match.code} is still waiting for an opponent.")

            fields: dict[str, Any] = {
                "status": MatchStatus.COMPLETED,
                "winner_id": winner_id,
                "loser_id": match.opponent_of(winner_id),
                "completed_at": self._clock(),
            }
            if player1_score is not None or player2_score is not None:
                self._check_scores(match, winner_id, player1_score, player2_score)
                fields["player1_score"] = player1_score
                fields["player2_score"] = player2_score
            if reported_by is not None:
                fields["reported_by"] = reported_by

            ok = await self._store.conditional_update_match(
                match_id=match.match_id,
                expected_status=match.status,
                fields=fields,
            )
            if ok:
                return replace(match, **fields)

            # lost the race: re-read and re-validate against the new state
            match = await self._load_match(match.match_id)

        raise MatchStatusConflictError(f"Match {match.code} kept changing status; try again.")

    @staticmethod
    def _check_scores(
        match: Match,
        winner_id: int,
        player1_score: Optional[int],
        player2_score: Optional[int],
    ) -> None:
        if player1_score is None or player2_score is None:
            raise InvalidResultError("Report both scores or neither.")
        if player1_score < 0 or player2_score < 0:
            raise InvalidResultError("Scores must be non-negative.")
        own, other = (
            (player1_score, player2_score) if winner_id == match.player1_id else (player2_score, player1_score)
        )
        if own < other:
            raise InvalidResultError(f"Winner {winner_id} has the lower score in match {match.code}.")

    # -------------------------
    # Routing
    # -------------------------

    async def _progress(self, tournament: Tournament, match: Match) -> AdvanceResult:
        tid = tournament.tournament_id
        downstream: list[Match] = []
        created: list[Match] = []

        if match.winner_id is not None:
            if match.winner_advances_to is not None:
                downstream.append(await self._fill_slot(match, match.winner_advances_to, match.winner_id))
            if match.loser_id is not None:
                if match.loser_advances_to is not None:
                    downstream.append(await self._fill_slot(match, match.loser_advances_to, match.loser_id))
                elif not self._is_reset_trigger(match):
                    await self._log_elimination(match, match.loser_id)
        else:
            # double forfeit: nobody moves on from this match
            for ref in (match.winner_advances_to, match.loser_advances_to):
                if ref is not None:
                    downstream.extend(await self._close_slot(match, ref))
            for pid in match.players:
                if pid is not None:
                    await self._log_elimination(match, pid)

        complete = False
        champion_id: Optional[int] = None
        next_match: Optional[Match] = None

        if match.stage in _ELIMINATION_STAGES:
            if self._is_reset_trigger(match):
                reset = await self._create_reset(match)
                created.append(reset)
                next_match = reset
            else:
                final = match if match.winner_advances_to is None else next(
                    (m for m in downstream if m.is_completed and m.winner_advances_to is None), None
                )
                if final is not None and await self._finish_tournament(tid, final.winner_id):
                    complete, champion_id = True, final.winner_id

        elif match.stage == Stage.ROUND_ROBIN:
            if await self._stage_finished(tid, Stage.ROUND_ROBIN):
                complete = await self._finish_tournament(tid, None)

        elif match.stage == Stage.GROUP:
            if await self._stage_finished(tid, Stage.GROUP):
                if tournament.config.knockout_stage_teams:
                    created.extend(await self._create_knockout(tournament))
                else:
                    complete = await self._finish_tournament(tid, None)

        if next_match is None:
            next_match = next((m for m in downstream if m.status == MatchStatus.READY), None)

        return AdvanceResult(
            match=match,
            tournament_complete=complete,
            next_match=next_match,
            created_matches=tuple(created),
            champion_id=champion_id,
        )

    @staticmethod
    def _is_reset_trigger(match: Match) -> bool:
        # losers bracket champion took the first grand final
        return (
            match.bracket == BracketKey.GF
            and match.round_no == 1
            and match.has_both_players()
            and match.winner_id is not None
            and match.winner_id == match.player2_id
        )

    async def _log_elimination(self, match: Match, participant_id: int) -> None:
        if match.stage not in _ELIMINATION_STAGES:
            return
        await self._append_log(
            match.tournament_id,
            "eliminated",
            f"Participant {participant_id} eliminated in {match.code}.",
            match_id=match.match_id,
            participant_id=participant_id,
        )

    async def _fill_slot(self, source: Match, ref: SlotRef, participant_id: int) -> Match:
        """
        Places `participant_id` into the slot `ref` names and returns the downstream match.
        Re-placing the same participant is a no-op. A downstream bye completes at once and
        the participant keeps moving; the match they end up waiting in is returned.
        """
        for _ in range(self._cas_retries):
            target = await self._store.get_match(match_id=ref.match_id)
            if target is None:
                raise BracketLinkError(f"{source.code} points at missing match {ref.match_id}.")

            current = target.player_in_slot(ref.slot)
            if current == participant_id:
                break
            if current is not None:
                raise BracketLinkError(
                    f"Slot {ref.slot} of {target.code} already holds participant {current}."
                )
            if target.is_completed:
                raise BracketLinkError(f"{target.code} is already completed; cannot seat {participant_id}.")

            ok = await self._store.conditional_update_match(
                match_id=target.match_id,
                expected_status=target.status,
                fields={ref.column: participant_id},
                require_empty=(ref.column,),
            )
            if ok:
                await self._append_log(
                    source.tournament_id,
                    "auto_advance",
                    f"Participant {participant_id} moved from {source.code} to {target.code}.",
                    match_id=target.match_id,
                    participant_id=participant_id,
                    metadata={"from": source.match_id, "slot": ref.slot},
                )
                break
        else:
            raise BracketLinkError(f"Could not seat participant {participant_id} in {ref.match_id}.")

        target = await self._store.get_match(match_id=ref.match_id)
        if target is None:
            raise BracketLinkError(f"Match {ref.match_id} disappeared while seating {participant_id}.")

        if target.is_bye and not target.is_completed:
            return await self._resolve_bye(target, participant_id)

        if target.has_both_players() and target.status == MatchStatus.PENDING:
            ok = await self._store.conditional_update_match(
                match_id=target.match_id,
                expected_status=MatchStatus.PENDING,
                fields={"status": MatchStatus.READY},
            )
            if ok:
                return replace(target, status=MatchStatus.READY)
            target = await self._store.get_match(match_id=target.match_id) or target
        return target

    async def _resolve_bye(self, match: Match, participant_id: int) -> Match:
        fields: dict[str, Any] = {
            "status": MatchStatus.COMPLETED,
            "winner_id": participant_id,
            "is_bye": True,
            "completed_at": self._clock(),
        }
        ok = await self._store.conditional_update_match(
            match_id=match.match_id,
            expected_status=match.status,
            fields=fields,
        )
        if not ok:
            # another report already resolved it
            return await self._store.get_match(match_id=match.match_id) or match

        done = replace(match, **fields)
        await self._append_log(
            match.tournament_id,
            "bye_advance",
            f"Participant {participant_id} advanced through bye {match.code}.",
            match_id=match.match_id,
            participant_id=participant_id,
        )
        if done.winner_advances_to is None:
            return done
        return await self._fill_slot(done, done.winner_advances_to, participant_id)

    async def _close_slot(self, source: Match, ref: SlotRef) -> list[Match]:
        """
        Slot `ref` will never be filled. Whoever holds (or is still heading for) the
        other slot goes through as a bye; with both sides closed the match is voided
        and its own outgoing slots close in turn. Returns the matches this settled.
        """
        other = 2 if ref.slot == 1 else 1
        other_col = SlotRef(ref.match_id, other).column

        for _ in range(self._cas_retries):
            target = await self._store.get_match(match_id=ref.match_id)
            if target is None:
                raise BracketLinkError(f"{source.code} points at missing match {ref.match_id}.")
            if target.is_completed:
                return [target]

            waiting = target.player_in_slot(other)
            if waiting is not None:
                return [await self._resolve_bye(target, waiting)]

            if await self._feed_open(target, other):
                # the arriving participant sees is_bye and walks through
                ok = await self._store.conditional_update_match(
                    match_id=target.match_id,
                    expected_status=target.status,
                    fields={"is_bye": True},
                    require_empty=(other_col,),
                )
                if ok:
                    return [replace(target, is_bye=True)]
                continue

            fields: dict[str, Any] = {
                "status": MatchStatus.COMPLETED,
                "is_bye": True,
                "completed_at": self._clock(),
            }
            ok = await self._store.conditional_update_match(
                match_id=target.match_id,
                expected_status=target.status,
                fields=fields,
                require_empty=(other_col,),
            )
            if not ok:
                continue

            voided = replace(target, **fields)
            await self._append_log(
                voided.tournament_id,
                "match_voided",
                f"{voided.code} has no participants left after {source.code}; voided.",
                match_id=voided.match_id,
            )
            settled = [voided]
            for nxt in (voided.winner_advances_to, voided.loser_advances_to):
                if nxt is not None:
                    settled.extend(await self._close_slot(voided, nxt))
            return settled

        raise BracketLinkError(f"Could not close slot {ref.slot} of {ref.match_id}.")

    async def _feed_open(self, target: Match, slot: int) -> bool:
        """True while some source match can still send a participant into `slot`."""
        ref = SlotRef(target.match_id, slot)
        for m in await self._store.list_matches(tournament_id=target.tournament_id, stage=target.stage):
            if m.winner_advances_to == ref and (not m.is_completed or m.winner_id is not None):
                return True
            # a bye has no loser to send
            if m.loser_advances_to == ref and not m.is_bye and (not m.is_completed or m.loser_id is not None):
                return True
        return False

    # -------------------------
    # Stage transitions
    # -------------------------

    async def _create_reset(self, gf: Match) -> Match:
        reset = Match(
            match_id=match_id_for(gf.tournament_id, match_code(gf.stage, BracketKey.GF, 2, 1)),
            tournament_id=gf.tournament_id,
            stage=gf.stage,
            round_no=2,
            match_no=1,
            bracket=BracketKey.GF,
            player1_id=gf.player1_id,
            player2_id=gf.player2_id,
            status=MatchStatus.READY,
        )
        inserted = await self._store.insert_matches([reset])
        if not inserted:
            existing = await self._store.get_match(match_id=reset.match_id)
            return existing or reset

        await self._append_log(
            gf.tournament_id,
            "bracket_reset_created",
            f"Losers bracket champion {gf.winner_id} won {gf.code}; bracket reset created.",
            match_id=reset.match_id,
            participant_id=gf.winner_id,
        )
        log.info("Bracket reset created for tournament %s", gf.tournament_id)
        return reset

    async def _stage_finished(self, tournament_id: int, stage: Stage) -> bool:
        matches = await self._store.list_matches(tournament_id=tournament_id, stage=stage)
        return bool(matches) and all(m.is_completed for m in matches)

    async def _create_knockout(self, tournament: Tournament) -> list[Match]:
        tid = tournament.tournament_id
        if await self._store.list_matches(tournament_id=tid, stage=Stage.KNOCKOUT):
            return []

        participants = await self._store.list_participants(tournament_id=tid)
        group_matches = await self._store.list_matches(tournament_id=tid, stage=Stage.GROUP)
        tables = group_tables(participants, group_matches, tournament.config)
        ranked = {label: [r.participant_id for r in rows] for label, rows in tables.items()}

        knockout = build_knockout(tid, ranked, tournament.config.knockout_stage_teams)
        inserted = set(await self._store.insert_matches(knockout))
        if not inserted:
            return []

        await self._append_log(
            tid,
            "knockout_generated",
            f"Group stage finished; {len(knockout)} knockout matches created.",
            metadata={"qualifiers": {label: ids[: tournament.config.knockout_stage_teams] for label, ids in ranked.items()}},
        )
        log.info("Knockout stage created for tournament %s (%d matches)", tid, len(knockout))
        return [m for m in knockout if m.match_id in inserted]

    async def _finish_tournament(self, tournament_id: int, champion_id: Optional[int]) -> bool:
        """Returns False when a concurrent report already finished the tournament."""
        ok = await self._store.conditional_update_tournament_status(
            tournament_id=tournament_id,
            expected_status=TournamentStatus.ONGOING,
            status=TournamentStatus.COMPLETED,
        )
        if not ok:
            return False

        desc = f"Tournament complete; champion {champion_id}." if champion_id else "Tournament complete."
        await self._append_log(tournament_id, "tournament_complete", desc, participant_id=champion_id)
        log.info("Tournament %s complete (champion=%s)", tournament_id, champion_id)
        return True

    async def _append_log(
        self,
        tournament_id: int,
        action: str,
        description: str,
        *,
        match_id: Optional[str] = None,
        participant_id: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        await self._store.append_log(
            LogEntry(
                tournament_id=tournament_id,
                action=action,
                description=description,
                match_id=match_id,
                participant_id=participant_id,
                metadata=metadata,
            )
        )
