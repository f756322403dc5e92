from __future__ import annotations

import os, sys
import time

HERE = os.path.dirname(__file__)
ROOT = os.path.abspath(os.path.join(HERE, "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import asyncio
from config import load_config
from db.schema import ensure_schema
from domain.enums import MatchStatus, TournamentStatus
from domain.errors import AlreadyCompletedError
from domain.models import Participant
from main import build_engine
from services.engine import BracketEngine


async def _play_out(engine: BracketEngine, tournament_id: int) -> int:
    """Reports the better seed as winner of every ready match until nothing is ready."""
    seeds = {p.participant_id: p.seed or 0 for p in await engine.store.list_participants(tournament_id=tournament_id)}
    played = 0
    while True:
        ready = await engine.list_ready_matches(tournament_id=tournament_id)
        if not ready:
            return played
        for m in ready:
            p1, p2 = m.player1_id, m.player2_id
            winner = p1 if seeds.get(p1, 0) <= seeds.get(p2, 0) else p2
            res = await engine.advance_winner(match_id=m.match_id, winner_id=winner)
            played += 1
            print(f"OK: {m.code} -> {winner} (next={res.next_match.code if res.next_match else '-'})")


async def main() -> None:
    cfg = load_config()
    engine, db = await build_engine(cfg)
    await ensure_schema(db)

    # unique ids per run; 99_cleanup_smoke.py removes them via SMOKE_TOURNAMENT_IDS
    base_id = int(os.getenv("SMOKE_TOURNAMENT_BASE") or int(time.time()))
    try:
        for offset, fmt, n in ((0, "single_elimination", 5), (1, "double_elimination", 6)):
            tid = base_id + offset
            players = [Participant(participant_id=1000 + i, name=f"smoke-{i}") for i in range(1, n + 1)]
            matches = await engine.generate_bracket(tournament_id=tid, participants=players, format=fmt)
            print(f"OK: {fmt} tournament {tid}: {len(matches)} matches")

            played = await _play_out(engine, tid)
            t = await engine.get_tournament(tournament_id=tid)
            assert t.status == TournamentStatus.COMPLETED, f"tournament {tid} not completed"

            # a repeat report for any completed match must be rejected
            done = await engine.get_bracket(tournament_id=tid)
            last = [m for m in done if m.status == MatchStatus.COMPLETED and m.winner_id is not None][-1]
            try:
                await engine.advance_winner(match_id=last.match_id, winner_id=last.winner_id)
            except AlreadyCompletedError:
                print("OK: duplicate report rejected")

            standings = await engine.get_standings(tournament_id=tid)
            print(f"OK: {played} matches played; champion {standings[0].participant_id} ({standings[0].status})")
    finally:
        await db.close()

    print(f"OK: bracket smoke done; SMOKE_TOURNAMENT_IDS={base_id},{base_id + 1}")


if __name__ == "__main__":
    asyncio.run(main())
