# tests/test_progression.py
from __future__ import annotations

import asyncio

import pytest

from conftest import make_players, match_by_code, play_out
from domain.enums import MatchStatus, Stage, TournamentFormat, TournamentStatus
from domain.errors import (
    AdvancementError,
    AlreadyCompletedError,
    InvalidResultError,
    InvalidWinnerError,
    MatchNotFoundError,
    MatchNotReadyError,
    MatchStatusConflictError,
    TournamentClosedError,
)
from domain.models import SlotRef
from repositories.memory_repo import InMemoryTournamentRepo
from services.engine import BracketEngine


class TestSingleElimination:
    @pytest.mark.asyncio
    async def test_five_player_run(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(5), format="single_elimination")

        res = await engine.advance_winner(match_id="1:W1-02", winner_id=4)
        assert res.match.winner_id == 4 and res.match.loser_id == 5
        assert not res.tournament_complete
        assert res.next_match is not None
        assert res.next_match.match_id == "1:W2-01"
        assert res.next_match.status == MatchStatus.READY
        assert res.next_match.players == (1, 4)

        await engine.advance_winner(match_id="1:W2-01", winner_id=1)
        res = await engine.advance_winner(match_id="1:W2-02", winner_id=2)
        assert res.next_match.match_id == "1:W3-01"
        assert res.next_match.players == (1, 2)

        res = await engine.advance_winner(match_id="1:W3-01", winner_id=1)
        assert res.tournament_complete
        assert res.champion_id == 1
        assert res.next_match is None

        t = await engine.get_tournament(tournament_id=1)
        assert t.status == TournamentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_report_is_rejected_without_mutation(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(5), format="single_elimination")
        await engine.advance_winner(match_id="1:W1-02", winner_id=4)
        before = await match_by_code(engine, 1, "W2-01")

        with pytest.raises(AlreadyCompletedError) as exc:
            await engine.advance_winner(match_id="1:W1-02", winner_id=5)
        assert exc.value.match.winner_id == 4

        after = await match_by_code(engine, 1, "W2-01")
        assert after == before

    @pytest.mark.asyncio
    async def test_invalid_winner(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="single_elimination")
        with pytest.raises(InvalidWinnerError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=99)
        m = await match_by_code(engine, 1, "W1-01")
        assert m.status == MatchStatus.READY
        assert m.winner_id is None

    @pytest.mark.asyncio
    async def test_match_not_ready(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(5), format="single_elimination")
        with pytest.raises(MatchNotReadyError):
            await engine.advance_winner(match_id="1:W2-01", winner_id=1)

    @pytest.mark.asyncio
    async def test_unknown_match(self, engine):
        with pytest.raises(MatchNotFoundError):
            await engine.advance_winner(match_id="1:W9-99", winner_id=1)

    @pytest.mark.asyncio
    async def test_bye_completion_is_rejected_as_already_completed(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(3), format="single_elimination")
        with pytest.raises(AlreadyCompletedError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("n", [2, 3, 5, 7, 12, 16])
    async def test_play_to_completion(self, engine, n):
        await engine.generate_bracket(tournament_id=n, participants=make_players(n), format="single_elimination")
        results = await play_out(engine, n)

        assert sum(1 for r in results if r.tournament_complete) == 1
        assert results[-1].tournament_complete
        assert results[-1].champion_id == 1
        matches = await engine.get_bracket(tournament_id=n)
        assert all(m.status == MatchStatus.COMPLETED for m in matches)


class TestDoubleElimination:
    async def _to_grand_final(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="double_elimination")
        await engine.advance_winner(match_id="1:W1-01", winner_id=1)
        res = await engine.advance_winner(match_id="1:W1-02", winner_id=2)
        # both W1 losers have arrived in L1
        assert res.next_match is not None
        assert {m.match_id for m in await engine.list_ready_matches(tournament_id=1)} == {"1:W2-01", "1:L1-01"}

        await engine.advance_winner(match_id="1:W2-01", winner_id=1)
        await engine.advance_winner(match_id="1:L1-01", winner_id=4)
        res = await engine.advance_winner(match_id="1:L2-01", winner_id=2)
        assert res.next_match.match_id == "1:GF-01"
        assert res.next_match.players == (1, 2)

    @pytest.mark.asyncio
    async def test_losers_go_to_losers_bracket(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="double_elimination")
        await engine.advance_winner(match_id="1:W1-01", winner_id=1)
        l1 = await match_by_code(engine, 1, "L1-01")
        assert l1.player1_id == 4
        assert l1.status == MatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_winners_champion_takes_grand_final(self, engine):
        await self._to_grand_final(engine)
        res = await engine.advance_winner(match_id="1:GF-01", winner_id=1)
        assert res.tournament_complete
        assert res.champion_id == 1
        assert res.created_matches == ()
        assert await match_by_code(engine, 1, "GF-02") is None

    @pytest.mark.asyncio
    async def test_bracket_reset(self, engine):
        await self._to_grand_final(engine)

        res = await engine.advance_winner(match_id="1:GF-01", winner_id=2)
        assert not res.tournament_complete
        assert res.next_match is not None
        assert res.next_match.match_id == "1:GF-02"
        assert res.next_match.status == MatchStatus.READY
        assert res.next_match.players == (1, 2)
        assert [m.match_id for m in res.created_matches] == ["1:GF-02"]

        t = await engine.get_tournament(tournament_id=1)
        assert t.status == TournamentStatus.ONGOING

        res = await engine.advance_winner(match_id="1:GF-02", winner_id=2)
        assert res.tournament_complete
        assert res.champion_id == 2

        logs = [e.action for e in await engine.get_logs(tournament_id=1)]
        assert "bracket_reset_created" in logs
        assert logs[-1] == "tournament_complete"

    @pytest.mark.asyncio
    async def test_two_player_double_elimination(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(2), format="double_elimination")
        res = await engine.advance_winner(match_id="1:W1-01", winner_id=2)
        assert res.next_match.match_id == "1:GF-01"
        assert res.next_match.players == (2, 1)
        res = await engine.advance_winner(match_id="1:GF-01", winner_id=2)
        assert res.tournament_complete

    @pytest.mark.asyncio
    async def test_losers_bye_resolves_when_player_arrives(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(6), format="double_elimination")
        res = await engine.advance_winner(match_id="1:W1-02", winner_id=4)

        l1 = await match_by_code(engine, 1, "L1-01")
        assert l1.status == MatchStatus.COMPLETED
        assert l1.winner_id == 5
        l2 = await match_by_code(engine, 1, "L2-01")
        assert l2.player1_id == 5
        assert res.match.match_id == "1:W1-02"

        logs = [e.action for e in await engine.get_logs(tournament_id=1)]
        assert "bye_advance" in logs

    @pytest.mark.asyncio
    @pytest.mark.parametrize("n", [3, 5, 6, 7, 8, 12, 16])
    async def test_play_to_completion(self, engine, n):
        await engine.generate_bracket(tournament_id=n, participants=make_players(n), format="double_elimination")
        results = await play_out(engine, n)

        assert results[-1].tournament_complete
        assert results[-1].champion_id == 1
        matches = await engine.get_bracket(tournament_id=n)
        assert all(m.status == MatchStatus.COMPLETED for m in matches)
        # every non-champion lost twice (or once, to the champion, in the grand final)
        played = [m for m in matches if m.is_played]
        assert len(played) == 2 * n - 2

    @pytest.mark.asyncio
    async def test_play_to_completion_with_reset(self, engine):
        # the higher id always wins: seed 1 drops to the losers bracket at once
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="double_elimination")
        results = await play_out(engine, 1, winner=max)
        assert results[-1].tournament_complete
        assert await match_by_code(engine, 1, "GF-02") is None

        await engine.generate_bracket(tournament_id=2, participants=make_players(4), format="double_elimination")

        def second_slot(a, b):
            return b

        results = await play_out(engine, 2, winner=second_slot)
        assert results[-1].tournament_complete
        assert await match_by_code(engine, 2, "GF-02") is not None


class TestRoundRobin:
    @pytest.mark.asyncio
    async def test_completes_after_last_match(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="round_robin")
        results = await play_out(engine, 1)
        assert len(results) == 6
        assert [r.tournament_complete for r in results] == [False] * 5 + [True]
        assert all(r.next_match is None for r in results)


class TestGroupStage:
    @pytest.mark.asyncio
    async def test_knockout_created_after_groups_finish(self, engine):
        await engine.generate_bracket(
            tournament_id=1,
            participants=make_players(8),
            format="group_stage",
            config={"group_count": 2, "teams_per_group": 4, "knockout_stage_teams": 2},
        )
        group_matches = await engine.get_bracket(tournament_id=1, stage=Stage.GROUP)
        assert len(group_matches) == 12

        results = []
        for m in group_matches:
            assert await engine.get_bracket(tournament_id=1, stage=Stage.KNOCKOUT) == []
            results.append(await engine.advance_winner(match_id=m.match_id, winner_id=min(m.players)))

        assert all(not r.created_matches for r in results[:-1])
        created = results[-1].created_matches
        assert {m.code for m in created} == {"K1-01", "K1-02", "K2-01"}
        assert not results[-1].tournament_complete

        ko = {m.code: m for m in await engine.get_bracket(tournament_id=1, stage=Stage.KNOCKOUT)}
        # A: 1,4,5,8 / B: 2,3,6,7; winners meet runners-up of the other group
        assert set(ko["K1-01"].players) == {1, 3}
        assert set(ko["K1-02"].players) == {2, 4}

        results = await play_out(engine, 1)
        assert results[-1].tournament_complete
        assert results[-1].champion_id == 1

    @pytest.mark.asyncio
    async def test_knockout_seeded_by_final_group_tables(self, engine):
        await engine.generate_bracket(
            tournament_id=1,
            participants=make_players(8),
            format="group_stage",
            config={"group_count": 2, "teams_per_group": 4, "knockout_stage_teams": 2},
        )
        # upsets everywhere: A finishes 8,5,4,1 and B finishes 7,6,3,2
        for m in await engine.get_bracket(tournament_id=1, stage=Stage.GROUP):
            await engine.advance_winner(match_id=m.match_id, winner_id=max(m.players))

        ko = {m.code: m for m in await engine.get_bracket(tournament_id=1, stage=Stage.KNOCKOUT)}
        assert ko["K1-01"].players == (8, 6)
        assert ko["K1-02"].players == (7, 5)

        results = await play_out(engine, 1, winner=max)
        assert results[-1].tournament_complete
        assert results[-1].champion_id == 8

    @pytest.mark.asyncio
    async def test_groups_only_completes_after_last_group_match(self, engine):
        await engine.generate_bracket(
            tournament_id=1,
            participants=make_players(6),
            format=TournamentFormat.GROUP_STAGE,
            config={"group_count": 2, "knockout_stage_teams": 0},
        )
        results = await play_out(engine, 1)
        assert len(results) == 6
        assert results[-1].tournament_complete
        assert results[-1].created_matches == ()


class TestStartMatch:
    @pytest.mark.asyncio
    async def test_ready_to_ongoing_then_completed(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(2), format="single_elimination")
        m = await engine.start_match(match_id="1:W1-01")
        assert m.status == MatchStatus.ONGOING
        # starting twice is harmless
        assert (await engine.start_match(match_id="1:W1-01")).status == MatchStatus.ONGOING

        res = await engine.advance_winner(match_id="1:W1-01", winner_id=2)
        assert res.tournament_complete
        with pytest.raises(AlreadyCompletedError):
            await engine.start_match(match_id="1:W1-01")

    @pytest.mark.asyncio
    async def test_pending_match_cannot_start(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="single_elimination")
        with pytest.raises(MatchNotReadyError):
            await engine.start_match(match_id="1:W2-01")


class TestScores:
    @pytest.mark.asyncio
    async def test_scores_are_stored(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(2), format="single_elimination")
        res = await engine.advance_winner(
            match_id="1:W1-01", winner_id=2, player1_score=1, player2_score=3, reported_by=77
        )
        assert (res.match.player1_score, res.match.player2_score) == (1, 3)
        stored = await match_by_code(engine, 1, "W1-01")
        assert stored.reported_by == 77
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_winner_with_lower_score_is_rejected(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(2), format="single_elimination")
        with pytest.raises(InvalidResultError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=1, player1_score=0, player2_score=2)
        with pytest.raises(InvalidResultError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=1, player1_score=2)
        assert (await match_by_code(engine, 1, "W1-01")).status == MatchStatus.READY


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_racing_reports_complete_once(self, engine):
        await engine.generate_bracket(tournament_id=1, participants=make_players(5), format="single_elimination")
        out = await asyncio.gather(
            engine.advance_winner(match_id="1:W1-02", winner_id=4),
            engine.advance_winner(match_id="1:W1-02", winner_id=5),
            return_exceptions=True,
        )
        ok = [r for r in out if not isinstance(r, Exception)]
        conflicts = [r for r in out if isinstance(r, AlreadyCompletedError)]
        assert len(ok) == 1 and len(conflicts) == 1

        w2 = await match_by_code(engine, 1, "W2-01")
        assert w2.player2_id == ok[0].match.winner_id

    @pytest.mark.asyncio
    async def test_lost_race_is_reported_as_already_completed(self):
        class RacingStore(InMemoryTournamentRepo):
            raced = False

            async def conditional_update_match(self, *, match_id, expected_status, fields, require_empty=()):
                if fields.get("status") == MatchStatus.COMPLETED and not self.raced:
                    # another reporter lands first
                    self.raced = True
                    await super().conditional_update_match(
                        match_id=match_id,
                        expected_status=expected_status,
                        fields={"status": MatchStatus.COMPLETED, "winner_id": 2, "loser_id": 1},
                    )
                    return False
                return await super().conditional_update_match(
                    match_id=match_id,
                    expected_status=expected_status,
                    fields=fields,
                    require_empty=require_empty,
                )

        engine = BracketEngine(RacingStore())
        await engine.generate_bracket(tournament_id=1, participants=make_players(2), format="single_elimination")
        with pytest.raises(AlreadyCompletedError) as exc:
            await engine.advance_winner(match_id="1:W1-01", winner_id=1)
        assert exc.value.match.winner_id == 2

    @pytest.mark.asyncio
    async def test_simultaneous_last_matches_complete_tournament_once(self):
        class YieldingStore(InMemoryTournamentRepo):
            """Gives other tasks a turn around every read and write."""

            async def _yield(self, call):
                await asyncio.sleep(0)
                out = await call
                await asyncio.sleep(0)
                return out

            async def get_match(self, **kw):
                return await self._yield(super().get_match(**kw))

            async def get_tournament(self, **kw):
                return await self._yield(super().get_tournament(**kw))

            async def list_matches(self, **kw):
                return await self._yield(super().list_matches(**kw))

            async def conditional_update_match(self, **kw):
                return await self._yield(super().conditional_update_match(**kw))

            async def conditional_update_tournament_status(self, **kw):
                return await self._yield(super().conditional_update_tournament_status(**kw))

            async def append_log(self, entry):
                return await self._yield(super().append_log(entry))

        engine = BracketEngine(YieldingStore())
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="round_robin")
        matches = await engine.get_bracket(tournament_id=1)
        last_round = max(m.round_no for m in matches)

        for m in matches:
            if m.round_no < last_round:
                await engine.advance_winner(match_id=m.match_id, winner_id=min(m.players))

        out = await asyncio.gather(
            *(
                engine.advance_winner(match_id=m.match_id, winner_id=min(m.players))
                for m in matches
                if m.round_no == last_round
            )
        )
        assert len(out) == 2
        assert sorted(r.tournament_complete for r in out) == [False, True]

        logs = [e.action for e in await engine.get_logs(tournament_id=1)]
        assert logs.count("tournament_complete") == 1
        assert (await engine.get_tournament(tournament_id=1)).status == TournamentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_status_churn_gives_up(self):
        class ChurningStore(InMemoryTournamentRepo):
            async def conditional_update_match(self, **kwargs):
                return False

        engine = BracketEngine(ChurningStore())
        await engine.generate_bracket(tournament_id=1, participants=make_players(2), format="single_elimination")
        with pytest.raises(MatchStatusConflictError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=1)


class TestFailures:
    @pytest.mark.asyncio
    async def test_broken_pointer_raises_advancement_error(self, engine, store):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="single_elimination")
        store._matches["1:W1-01"].winner_advances_to = SlotRef("1:W7-01", 1)

        with pytest.raises(AdvancementError) as exc:
            await engine.advance_winner(match_id="1:W1-01", winner_id=1)
        assert exc.value.match.match_id == "1:W1-01"
        assert exc.value.winner_id == 1

        # the result itself is kept
        assert (await match_by_code(engine, 1, "W1-01")).status == MatchStatus.COMPLETED
        logs = [e.action for e in await engine.get_logs(tournament_id=1)]
        assert "advancement_error" in logs

    @pytest.mark.asyncio
    async def test_occupied_slot_raises_advancement_error(self, engine, store):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="single_elimination")
        store._matches["1:W2-01"].player1_id = 42

        with pytest.raises(AdvancementError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=1)

    @pytest.mark.asyncio
    async def test_cancelled_tournament_rejects_results(self, engine, store):
        await engine.generate_bracket(tournament_id=1, participants=make_players(4), format="single_elimination")
        await store.update_tournament_status(tournament_id=1, status=TournamentStatus.CANCELLED)
        with pytest.raises(TournamentClosedError):
            await engine.advance_winner(match_id="1:W1-01", winner_id=1)
