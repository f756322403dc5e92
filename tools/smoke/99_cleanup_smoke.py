from __future__ import annotations

import os, sys
from dataclasses import asdict

HERE = os.path.dirname(__file__)
ROOT = os.path.abspath(os.path.join(HERE, "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import asyncio
from config import load_config
from db.pool import DbPool, MySqlPoolConfig
from db.tx import get_cursor

async def main() -> None:
    cfg = load_config()

    raw = os.getenv("SMOKE_TOURNAMENT_IDS")
    if not raw:
        raise RuntimeError("Set SMOKE_TOURNAMENT_IDS to the comma separated tournament ids to clean up.")
    tournament_ids = [int(x) for x in raw.split(",") if x.strip()]

    db = DbPool()
    await db.start(MySqlPoolConfig(**asdict(cfg.mysql)))

    tables = ("tournament_log", "tournament_match", "tournament_participant", "tournament")

    async with get_cursor(db.pool, dict_rows=False) as cur:
        for tid in tournament_ids:
            for table in tables:
                await cur.execute(f"DELETE FROM {table} WHERE tournament_id=%s;", (tid,))
                print(f"OK: {table}: {cur.rowcount} rows deleted for tournament {tid}")

    await db.close()
    print(f"OK: cleanup done for tournaments {tournament_ids}")

if __name__ == "__main__":
    asyncio.run(main())
