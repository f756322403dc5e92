# db/schema.py
from __future__ import annotations

import logging

from db.pool import DbPool
from db.tx import transaction

log = logging.getLogger(__name__)

SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS tournament (
      tournament_id      BIGINT       NOT NULL PRIMARY KEY,
      format             VARCHAR(32)  NOT NULL,
      status             VARCHAR(16)  NOT NULL DEFAULT 'upcoming',
      participant_count  INT          NOT NULL DEFAULT 0,
      config             JSON         NULL,
      created_at         DATETIME(6)  NOT NULL DEFAULT CURRENT_TIMESTAMP(6),
      updated_at         DATETIME(6)  NOT NULL DEFAULT CURRENT_TIMESTAMP(6)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
    """,
    """
    CREATE TABLE IF NOT EXISTS tournament_participant (
      tournament_id   BIGINT        NOT NULL,
      participant_id  BIGINT        NOT NULL,
      seed            INT           NULL,
      display_name    VARCHAR(128)  NULL,
      skill_rating    DOUBLE        NULL,
      group_label     VARCHAR(8)    NULL,
      PRIMARY KEY (tournament_id, participant_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
    """,
    """
    CREATE TABLE IF NOT EXISTS tournament_match (
      match_id            VARCHAR(64)  NOT NULL PRIMARY KEY,
      tournament_id       BIGINT       NOT NULL,
      stage               VARCHAR(16)  NOT NULL,
      bracket             VARCHAR(16)  NULL,
      group_label         VARCHAR(8)   NULL,
      round_no            INT          NOT NULL,
      match_no            INT          NOT NULL,
      player1_id          BIGINT       NULL,
      player2_id          BIGINT       NULL,
      winner_id           BIGINT       NULL,
      loser_id            BIGINT       NULL,
      status              VARCHAR(16)  NOT NULL DEFAULT 'pending',
      is_bye              TINYINT(1)   NOT NULL DEFAULT 0,
      winner_to_match_id  VARCHAR(64)  NULL,
      winner_to_slot      TINYINT      NULL,
      loser_to_match_id   VARCHAR(64)  NULL,
      loser_to_slot       TINYINT      NULL,
      player1_score       INT          NULL,
      player2_score       INT          NULL,
      reported_by         BIGINT       NULL,
      completed_at        DATETIME(6)  NULL,
      deadline            DATETIME(6)  NULL,
      player1_submitted_at DATETIME(6) NULL,
      player2_submitted_at DATETIME(6) NULL,
      created_at          DATETIME(6)  NOT NULL DEFAULT CURRENT_TIMESTAMP(6),
      updated_at          DATETIME(6)  NOT NULL DEFAULT CURRENT_TIMESTAMP(6),
      KEY ix_match_tournament (tournament_id, stage, bracket, round_no, match_no)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
    """,
    """
    CREATE TABLE IF NOT EXISTS tournament_log (
      log_id          BIGINT        NOT NULL AUTO_INCREMENT PRIMARY KEY,
      tournament_id   BIGINT        NOT NULL,
      match_id        VARCHAR(64)   NULL,
      participant_id  BIGINT        NULL,
      action          VARCHAR(32)   NOT NULL,
      description     VARCHAR(255)  NOT NULL,
      metadata        JSON          NULL,
      created_at      DATETIME(6)   NOT NULL DEFAULT CURRENT_TIMESTAMP(6),
      KEY ix_log_tournament (tournament_id, log_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
    """,
)


async def ensure_schema(db: DbPool) -> None:
    async with transaction(db.pool, dict_rows=False) as (_conn, cur):
        for ddl in SCHEMA:
            await cur.execute(ddl)
    log.info("Schema ensured (%d tables)", len(SCHEMA))
