# main.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from config import AppConfig, load_config
from db.pool import DbPool, MySqlPoolConfig
from db.schema import ensure_schema
from repositories.tournament_repo import TournamentRepo
from services.engine import BracketEngine


async def build_engine(cfg: AppConfig) -> tuple[BracketEngine, DbPool]:
    """
    Starts the MySQL pool and wires the engine to it. Caller owns db.close().
    """
    db = DbPool()
    await db.start(MySqlPoolConfig(**asdict(cfg.mysql)))
    engine = BracketEngine(TournamentRepo(db), cfg.engine)
    return engine, db


async def _run() -> None:
    cfg = load_config()

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logging.info("Starting tournament engine setup...")
    _engine, db = await build_engine(cfg)
    try:
        await ensure_schema(db)
        logging.info(
            "Engine ready (participants %d..%d, cas_retries=%d)",
            cfg.engine.min_participants,
            cfg.engine.max_participants,
            cfg.engine.cas_retries,
        )
    finally:
        await db.close()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
