# db/pool.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import aiomysql
from pymysql.constants import CLIENT

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MySqlPoolConfig:
    host: str
    port: int
    user: str
    password: str
    database: str
    minsize: int = 1
    maxsize: int = 5
    connect_timeout: int = 10


class DbPool:
    """
    Owns the aiomysql pool for the entity store.
    - Create once at startup, pass to repositories
    - Close on shutdown

    Connections report matched rows (not changed rows) for UPDATE, so a conditional
    update that matched its WHERE clause always returns rowcount 1.
    """

    def __init__(self) -> None:
        self._pool: Optional[aiomysql.Pool] = None

    @property
    def pool(self) -> aiomysql.Pool:
        if self._pool is None:
            raise RuntimeError("DB pool is not initialized. Call await DbPool.start() first.")
        return self._pool

    @property
    def started(self) -> bool:
        return self._pool is not None

    async def start(self, cfg: MySqlPoolConfig) -> None:
        if self._pool is not None:
            return

        self._pool = await aiomysql.create_pool(
            host=cfg.host,
            port=cfg.port,
            user=cfg.user,
            password=cfg.password,
            db=cfg.database,
            minsize=cfg.minsize,
            maxsize=cfg.maxsize,
            connect_timeout=cfg.connect_timeout,
            autocommit=True,
            charset="utf8mb4",
            client_flag=CLIENT.FOUND_ROWS,
        )
        log.info("MySQL pool started (%s:%s/%s)", cfg.host, cfg.port, cfg.database)

        await self.ping()

    async def ping(self) -> None:
        async with self.pool.acquire() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1;")
                await cur.fetchone()

    async def close(self) -> None:
        if self._pool is None:
            return
        self._pool.close()
        await self._pool.wait_closed()
        self._pool = None
        log.info("MySQL pool closed")
