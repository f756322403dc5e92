# services/engine.py
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Sequence

from config import EngineConfig
from domain.enums import BracketKey, MatchStatus, SeedingMode, Stage, TournamentStatus
from domain.errors import (
    AdvancementError,
    BracketAlreadyExistsError,
    TournamentClosedError,
    TournamentNotFoundError,
)
from domain.models import (
    AdvanceResult,
    FormatConfig,
    LogEntry,
    Match,
    MatchResultSubmission,
    Participant,
    RankedParticipant,
    Tournament,
)
from domain.seeding import seed_participants
from repositories.store import EntityStore
from services.bracket_generator import (
    generate_bracket,
    group_assignments,
    parse_format,
    resolve_format,
    validate_participants,
)
from services.progression_service import ProgressionEngine
from services.standings_service import StandingsCalculator

log = logging.getLogger(__name__)


class BracketEngine:
    """
    Entry point for callers: generate a bracket, report results, read standings.

        engine = BracketEngine(store, cfg.engine)
        await engine.generate_bracket(tournament_id=7, participants=ps, format="double_elimination")
        await engine.advance_winner(match_id="7:W1-01", winner_id=12)
    """

    def __init__(self, store: EntityStore, config: EngineConfig | None = None) -> None:
        self._store = store
        self._cfg = config or EngineConfig()
        self._progression = ProgressionEngine(
            store,
            cas_retries=self._cfg.cas_retries,
            round_deadline=timedelta(hours=self._cfg.round_deadline_hours),
        )
        self._standings = StandingsCalculator(store)

    @property
    def store(self) -> EntityStore:
        return self._store

    # -------------------------
    # Generation
    # -------------------------

    async def generate_bracket(
        self,
        *,
        tournament_id: int,
        participants: Sequence[Participant],
        format: Any,
        config: FormatConfig | Mapping[str, Any] | None = None,
    ) -> list[Match]:
        fmt = parse_format(format)
        if isinstance(config, FormatConfig):
            fcfg = config
        else:
            fcfg = FormatConfig.from_mapping(config, base=self._cfg.default_format_config())

        validate_participants(
            participants,
            min_count=self._cfg.min_participants,
            max_count=self._cfg.max_participants,
        )
        resolve_format(fmt, fcfg)

        existing = await self._store.get_tournament(tournament_id=tournament_id)
        if existing is not None and existing.status in (TournamentStatus.COMPLETED, TournamentStatus.CANCELLED):
            raise TournamentClosedError(f"Tournament {tournament_id} is {existing.status.value}.")
        if await self._store.list_matches(tournament_id=tournament_id):
            raise BracketAlreadyExistsError(f"Matches already exist for tournament {tournament_id}.")

        # seed once here so random draws and the stored seeds agree
        seeded = seed_participants(participants, fcfg.seeding, rng_seed=fcfg.rng_seed)
        matches = generate_bracket(
            tournament_id,
            seeded,
            fmt,
            replace(fcfg, seeding=SeedingMode.STANDARD),
            max_participants=self._cfg.max_participants,
        )

        groups = group_assignments(matches)
        seeded = [replace(p, group=groups.get(int(p.participant_id))) for p in seeded]

        await self._store.save_tournament(
            Tournament(
                tournament_id=tournament_id,
                format=fmt,
                participant_count=len(seeded),
                status=TournamentStatus.ONGOING,
                config=fcfg,
            )
        )
        await self._store.insert_participants(tournament_id=tournament_id, participants=seeded)
        await self._store.insert_matches(matches)

        byes = sum(1 for m in matches if m.is_bye)
        await self._store.append_log(
            LogEntry(
                tournament_id=tournament_id,
                action="bracket_generated",
                description=f"{fmt.value} bracket generated: {len(matches)} matches for {len(seeded)} participants.",
                metadata={"format": fmt.value, "matches": len(matches), "byes": byes},
            )
        )
        log.info(
            "Generated %s bracket for tournament %s (%d participants, %d matches, %d byes)",
            fmt.value, tournament_id, len(seeded), len(matches), byes,
        )
        return matches

    # -------------------------
    # Results
    # -------------------------

    async def advance_winner(
        self,
        *,
        match_id: str,
        winner_id: int,
        player1_score: Optional[int] = None,
        player2_score: Optional[int] = None,
        reported_by: Optional[int] = None,
    ) -> AdvanceResult:
        try:
            return await self._progression.advance_winner(
                match_id=match_id,
                winner_id=winner_id,
                player1_score=player1_score,
                player2_score=player2_score,
                reported_by=reported_by,
            )
        except AdvancementError as e:
            log.error("Advancement failed after recording %s: %s", match_id, e)
            await self._log_advancement_error(e)
            raise

    async def submit_result(self, submission: MatchResultSubmission | Mapping[str, Any]) -> AdvanceResult:
        if not isinstance(submission, MatchResultSubmission):
            submission = MatchResultSubmission.from_payload(submission)
        return await self.advance_winner(
            match_id=submission.match_id,
            winner_id=submission.winner_id,
            player1_score=submission.player1_score,
            player2_score=submission.player2_score,
            reported_by=submission.reported_by,
        )

    async def start_match(self, *, match_id: str) -> Match:
        return await self._progression.start_match(match_id=match_id)

    # -------------------------
    # Deadlines
    # -------------------------

    async def mark_submitted(self, *, match_id: str, participant_id: int) -> Match:
        return await self._progression.mark_submitted(match_id=match_id, participant_id=participant_id)

    async def set_round_deadlines(
        self,
        *,
        tournament_id: int,
        round_no: int,
        deadline: Optional[datetime] = None,
        stage: Optional[Stage] = None,
        bracket: Optional[BracketKey] = None,
    ) -> list[Match]:
        return await self._progression.set_round_deadlines(
            tournament_id=tournament_id,
            round_no=round_no,
            deadline=deadline,
            stage=stage,
            bracket=bracket,
        )

    async def process_deadline_forfeits(
        self,
        *,
        tournament_id: int,
        now: Optional[datetime] = None,
    ) -> list[AdvanceResult]:
        try:
            return await self._progression.process_deadline_forfeits(tournament_id=tournament_id, now=now)
        except AdvancementError as e:
            log.error("Advancement failed while settling forfeits for %s: %s", e.match.match_id, e)
            await self._log_advancement_error(e)
            raise

    async def _log_advancement_error(self, err: AdvancementError) -> None:
        try:
            await self._store.append_log(
                LogEntry(
                    tournament_id=err.match.tournament_id,
                    action="advancement_error",
                    description=str(err)[:255],
                    match_id=err.match.match_id,
                    participant_id=err.winner_id,
                )
            )
        except Exception:
            # best effort; the AdvancementError is re-raised either way
            log.exception("Could not write advancement_error log for %s", err.match.match_id)

    # -------------------------
    # Reads
    # -------------------------

    async def get_tournament(self, *, tournament_id: int) -> Tournament:
        t = await self._store.get_tournament(tournament_id=tournament_id)
        if t is None:
            raise TournamentNotFoundError(f"Tournament not found: {tournament_id}")
        return t

    async def get_bracket(self, *, tournament_id: int, stage: Optional[Stage] = None) -> list[Match]:
        await self.get_tournament(tournament_id=tournament_id)
        return await self._store.list_matches(tournament_id=tournament_id, stage=stage)

    async def list_ready_matches(self, *, tournament_id: int) -> list[Match]:
        await self.get_tournament(tournament_id=tournament_id)
        return await self._store.list_matches(tournament_id=tournament_id, status=MatchStatus.READY)

    async def get_standings(self, *, tournament_id: int, stage: Optional[Stage] = None) -> list[RankedParticipant]:
        if stage == Stage.KNOCKOUT:
            return await self._standings.get_knockout_standings(tournament_id=tournament_id)
        return await self._standings.get_standings(tournament_id=tournament_id)

    async def get_group_tables(self, *, tournament_id: int) -> dict[str, list[RankedParticipant]]:
        return await self._standings.get_group_tables(tournament_id=tournament_id)

    async def get_logs(self, *, tournament_id: int) -> list[LogEntry]:
        return await self._store.list_logs(tournament_id=tournament_id)
