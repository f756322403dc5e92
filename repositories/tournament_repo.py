# repositories/tournament_repo.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

import aiomysql

from db.tx import transaction
from domain.enums import BracketKey, MatchStatus, Stage, TournamentFormat, TournamentStatus
from domain.models import FormatConfig, LogEntry, Match, Participant, SlotRef, Tournament
from repositories.base_repo import BaseRepo, from_json, to_json
from repositories.store import check_update_fields

_MATCH_COLUMNS = (
    "match_id",
    "tournament_id",
    "stage",
    "bracket",
    "group_label",
    "round_no",
    "match_no",
    "player1_id",
    "player2_id",
    "winner_id",
    "loser_id",
    "status",
    "is_bye",
    "winner_to_match_id",
    "winner_to_slot",
    "loser_to_match_id",
    "loser_to_slot",
    "player1_score",
    "player2_score",
    "reported_by",
    "completed_at",
    "deadline",
    "player1_submitted_at",
    "player2_submitted_at",
)

_MATCH_ORDER = """
ORDER BY
  stage,
  COALESCE(group_label, ''),
  CASE bracket WHEN 'winners' THEN 0 WHEN 'losers' THEN 1 WHEN 'grand_final' THEN 2 ELSE 0 END,
  round_no, match_no
"""


def _opt_int(v: Any) -> Optional[int]:
    return int(v) if v is not None else None


def _slot_ref(match_id: Any, slot: Any) -> Optional[SlotRef]:
    if match_id is None or slot is None:
        return None
    return SlotRef(str(match_id), int(slot))


def row_to_match(r: Mapping[str, Any]) -> Match:
    return Match(
        match_id=str(r["match_id"]),
        tournament_id=int(r["tournament_id"]),
        stage=Stage(str(r["stage"])),
        round_no=int(r["round_no"]),
        match_no=int(r["match_no"]),
        bracket=BracketKey(str(r["bracket"])) if r.get("bracket") else None,
        group=r.get("group_label"),
        player1_id=_opt_int(r.get("player1_id")),
        player2_id=_opt_int(r.get("player2_id")),
        winner_id=_opt_int(r.get("winner_id")),
        loser_id=_opt_int(r.get("loser_id")),
        status=MatchStatus(str(r["status"])),
        is_bye=bool(r.get("is_bye")),
        winner_advances_to=_slot_ref(r.get("winner_to_match_id"), r.get("winner_to_slot")),
        loser_advances_to=_slot_ref(r.get("loser_to_match_id"), r.get("loser_to_slot")),
        player1_score=_opt_int(r.get("player1_score")),
        player2_score=_opt_int(r.get("player2_score")),
        reported_by=_opt_int(r.get("reported_by")),
        completed_at=r.get("completed_at"),
        deadline=r.get("deadline"),
        player1_submitted_at=r.get("player1_submitted_at"),
        player2_submitted_at=r.get("player2_submitted_at"),
    )


def match_to_params(m: Match) -> tuple[Any, ...]:
    w = m.winner_advances_to
    lo = m.loser_advances_to
    return (
        m.match_id,
        m.tournament_id,
        m.stage.value,
        m.bracket.value if m.bracket else None,
        m.group,
        m.round_no,
        m.match_no,
        m.player1_id,
        m.player2_id,
        m.winner_id,
        m.loser_id,
        m.status.value,
        1 if m.is_bye else 0,
        w.match_id if w else None,
        w.slot if w else None,
        lo.match_id if lo else None,
        lo.slot if lo else None,
        m.player1_score,
        m.player2_score,
        m.reported_by,
        m.completed_at,
        m.deadline,
        m.player1_submitted_at,
        m.player2_submitted_at,
    )


class TournamentRepo(BaseRepo):
    """
    MySQL-backed EntityStore: tournament, tournament_participant, tournament_match, tournament_log.
    """

    # -------------------------
    # Tournaments
    # -------------------------

    async def get_tournament(self, *, tournament_id: int) -> Optional[Tournament]:
        row = await self.fetch_one(
            "SELECT * FROM tournament WHERE tournament_id=%s;",
            (tournament_id,),
        )
        if not row:
            return None
        return Tournament(
            tournament_id=int(row["tournament_id"]),
            format=TournamentFormat(str(row["format"])),
            participant_count=int(row.get("participant_count") or 0),
            status=TournamentStatus(str(row["status"])),
            config=FormatConfig.from_mapping(from_json(row.get("config"))),
        )

    async def save_tournament(self, tournament: Tournament) -> None:
        await self.execute(
            """
            INSERT INTO tournament (tournament_id, format, status, participant_count, config)
            VALUES (%s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
              format = VALUES(format),
              status = VALUES(status),
              participant_count = VALUES(participant_count),
              config = VALUES(config),
              updated_at = NOW(6);
            """,
            (
                tournament.tournament_id,
                tournament.format.value,
                tournament.status.value,
                tournament.participant_count,
                to_json(tournament.config.to_dict()),
            ),
        )

    async def update_tournament_status(self, *, tournament_id: int, status: TournamentStatus) -> None:
        await self.execute(
            "UPDATE tournament SET status=%s, updated_at=NOW(6) WHERE tournament_id=%s;",
            (TournamentStatus(status).value, tournament_id),
        )

    async def conditional_update_tournament_status(
        self,
        *,
        tournament_id: int,
        expected_status: TournamentStatus,
        status: TournamentStatus,
    ) -> bool:
        changed = await self.execute(
            "UPDATE tournament SET status=%s, updated_at=NOW(6) WHERE tournament_id=%s AND status=%s;",
            (TournamentStatus(status).value, tournament_id, TournamentStatus(expected_status).value),
        )
        return changed == 1

    # -------------------------
    # Participants
    # -------------------------

    async def insert_participants(self, *, tournament_id: int, participants: Sequence[Participant]) -> None:
        if not participants:
            return
        await self.execute_many(
            """
            INSERT INTO tournament_participant
              (tournament_id, participant_id, seed, display_name, skill_rating, group_label)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
              seed = VALUES(seed),
              display_name = VALUES(display_name),
              skill_rating = VALUES(skill_rating),
              group_label = VALUES(group_label);
            """,
            [
                (tournament_id, p.participant_id, p.seed, p.name, p.skill_rating, p.group)
                for p in participants
            ],
        )

    async def list_participants(self, *, tournament_id: int) -> list[Participant]:
        rows = await self.fetch_all(
            """
            SELECT participant_id, seed, display_name, skill_rating, group_label
            FROM tournament_participant
            WHERE tournament_id=%s
            ORDER BY seed IS NULL, seed, participant_id;
            """,
            (tournament_id,),
        )
        return [
            Participant(
                participant_id=int(r["participant_id"]),
                seed=_opt_int(r.get("seed")),
                name=r.get("display_name"),
                skill_rating=float(r["skill_rating"]) if r.get("skill_rating") is not None else None,
                group=r.get("group_label"),
            )
            for r in rows
        ]

    # -------------------------
    # Matches
    # -------------------------

    async def get_match(self, *, match_id: str) -> Optional[Match]:
        row = await self.fetch_one("SELECT * FROM tournament_match WHERE match_id=%s;", (match_id,))
        return row_to_match(row) if row else None

    async def conditional_update_match(
        self,
        *,
        match_id: str,
        expected_status: MatchStatus,
        fields: Mapping[str, Any],
        require_empty: Sequence[str] = (),
    ) -> bool:
        check_update_fields(fields, require_empty)
        if not fields:
            return False

        assignments: list[str] = []
        params: list[Any] = []
        for col, value in fields.items():
            assignments.append(f"{col}=%s")
            params.append(MatchStatus(value).value if col == "status" else value)

        where = ["match_id=%s", "status=%s"]
        params.extend([match_id, MatchStatus(expected_status).value])
        for col in require_empty:
            where.append(f"{col} IS NULL")

        changed = await self.execute(
            f"UPDATE tournament_match SET {', '.join(assignments)}, updated_at=NOW(6) "
            f"WHERE {' AND '.join(where)};",
            params,
        )
        return changed == 1

    async def insert_matches(self, matches: Sequence[Match]) -> list[str]:
        placeholders = ", ".join(["%s"] * len(_MATCH_COLUMNS))
        sql = f"INSERT INTO tournament_match ({', '.join(_MATCH_COLUMNS)}) VALUES ({placeholders});"

        inserted: list[str] = []
        async with transaction(self.pool, dict_rows=False) as (_conn, cur):
            for m in matches:
                try:
                    await cur.execute(sql, match_to_params(m))
                except aiomysql.IntegrityError:
                    # someone else created it concurrently (same deterministic id)
                    continue
                inserted.append(m.match_id)
        return inserted

    async def list_matches(
        self,
        *,
        tournament_id: int,
        stage: Optional[Stage] = None,
        bracket: Optional[BracketKey] = None,
        status: Optional[MatchStatus] = None,
        group: Optional[str] = None,
    ) -> list[Match]:
        where = ["tournament_id=%s"]
        params: list[Any] = [tournament_id]
        if stage is not None:
            where.append("stage=%s")
            params.append(Stage(stage).value)
        if bracket is not None:
            where.append("bracket=%s")
            params.append(BracketKey(bracket).value)
        if status is not None:
            where.append("status=%s")
            params.append(MatchStatus(status).value)
        if group is not None:
            where.append("group_label=%s")
            params.append(group)

        rows = await self.fetch_all(
            f"SELECT * FROM tournament_match WHERE {' AND '.join(where)} {_MATCH_ORDER};",
            params,
        )
        return [row_to_match(r) for r in rows]

    # -------------------------
    # Audit log
    # -------------------------

    async def append_log(self, entry: LogEntry) -> None:
        await self.execute(
            """
            INSERT INTO tournament_log (tournament_id, match_id, participant_id, action, description, metadata)
            VALUES (%s, %s, %s, %s, %s, %s);
            """,
            (
                entry.tournament_id,
                entry.match_id,
                entry.participant_id,
                entry.action,
                entry.description[:255],
                to_json(dict(entry.metadata) if entry.metadata else None),
            ),
        )

    async def list_logs(self, *, tournament_id: int) -> list[LogEntry]:
        rows = await self.fetch_all(
            """
            SELECT tournament_id, match_id, participant_id, action, description, metadata
            FROM tournament_log
            WHERE tournament_id=%s
            ORDER BY log_id;
            """,
            (tournament_id,),
        )
        return [
            LogEntry(
                tournament_id=int(r["tournament_id"]),
                action=str(r["action"]),
                description=str(r["description"]),
                match_id=r.get("match_id"),
                participant_id=_opt_int(r.get("participant_id")),
                metadata=from_json(r.get("metadata")) or None,
            )
            for r in rows
        ]
