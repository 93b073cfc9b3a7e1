# src/actionflow/runtime/action_ledger.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from actionflow.runtime.action_types import Action, ActionRecord, ActionStatus
from actionflow.runtime.errors import ActionNotFound, InvalidTransition
from actionflow.runtime.sqlite_db import SqliteDB, _canon_json

Json = Dict[str, Any]


@dataclass
class ActionLedger:
    """Audit trail of submitted actions (`action_log`).

    Rows are inserted once by process() and only ever move
    pending -> confirmed or pending -> failed. Nothing deletes them.

    Methods taking `con` run inside the caller's write transaction; the
    others open their own read connection.
    """

    db: SqliteDB

    def record(self, con: sqlite3.Connection, action: Action, *, now_ms: int) -> None:
        con.execute(
            """
            INSERT INTO action_log(
              id, actor_key, kind, payload_json, external_ref,
              status, optimistic_applied, verification_json, created_ms
            )
            VALUES(?, ?, ?, ?, ?, ?, 1, NULL, ?);
            """,
            (
                action.id,
                action.actor_key,
                action.kind,
                _canon_json(action.payload),
                action.external_ref,
                ActionStatus.PENDING,
                int(now_ms),
            ),
        )

    def get(self, con: sqlite3.Connection, action_id: str) -> Optional[ActionRecord]:
        row = con.execute("SELECT * FROM action_log WHERE id=? LIMIT 1;", (str(action_id),)).fetchone()
        return ActionRecord.from_row(row) if row is not None else None

    def get_for_update(self, con: sqlite3.Connection, action_id: str) -> ActionRecord:
        """Load a record inside a write transaction or raise ActionNotFound.

        write_tx() holds the database write lock (BEGIN IMMEDIATE), so the
        returned status cannot change under the caller until it commits.
        """
        rec = self.get(con, action_id)
        if rec is None:
            raise ActionNotFound(details={"action_id": str(action_id)})
        return rec

    def fetch(self, action_id: str) -> Optional[ActionRecord]:
        with self.db.connection() as con:
            return self.get(con, action_id)

    def _transition(
        self,
        con: sqlite3.Connection,
        action_id: str,
        *,
        status: str,
        ts_column: str,
        verification: Json,
        now_ms: int,
    ) -> None:
        cur = con.execute(
            f"""
            UPDATE action_log SET status=?, verification_json=?, {ts_column}=?
            WHERE id=? AND status=?;
            """,
            (status, _canon_json(verification), int(now_ms), str(action_id), ActionStatus.PENDING),
        )
        if int(cur.rowcount or 0) == 1:
            return

        rec = self.get(con, action_id)
        if rec is None:
            raise ActionNotFound(details={"action_id": str(action_id)})
        raise InvalidTransition(details={"action_id": rec.id, "status": rec.status, "requested": status})

    def mark_confirmed(self, con: sqlite3.Connection, action_id: str, verification: Json, *, now_ms: int) -> None:
        self._transition(
            con,
            action_id,
            status=ActionStatus.CONFIRMED,
            ts_column="confirmed_ms",
            verification=verification,
            now_ms=now_ms,
        )

    def mark_failed(self, con: sqlite3.Connection, action_id: str, verification: Json, *, now_ms: int) -> None:
        self._transition(
            con,
            action_id,
            status=ActionStatus.FAILED,
            ts_column="failed_ms",
            verification=verification,
            now_ms=now_ms,
        )

    def list_for_actor(self, actor_key: str, *, limit: int = 100) -> List[ActionRecord]:
        lim = int(limit) if int(limit) > 0 else 100
        with self.db.connection() as con:
            rows = con.execute(
                """
                SELECT * FROM action_log
                WHERE actor_key=?
                ORDER BY created_ms DESC, id ASC
                LIMIT ?;
                """,
                (str(actor_key), lim),
            ).fetchall()
        return [ActionRecord.from_row(r) for r in rows]

    def count_by_status(self) -> Dict[str, int]:
        out = {ActionStatus.PENDING: 0, ActionStatus.CONFIRMED: 0, ActionStatus.FAILED: 0}
        with self.db.connection() as con:
            rows = con.execute("SELECT status, COUNT(1) AS n FROM action_log GROUP BY status;").fetchall()
        for r in rows:
            out[str(r["status"])] = int(r["n"])
        return out
