# src/actionflow/runtime/verification_queue.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from actionflow.runtime.action_types import VerificationTask
from actionflow.runtime.metrics import inc_counter
from actionflow.runtime.sqlite_db import SqliteDB
from actionflow.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("actionflow.scheduler")

DAY_MS = 24 * 60 * 60 * 1000

TASK_PENDING = "pending"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class VerificationScheduler:
    """SQLite-backed verification queue.

    Table schema:
      verification_queue(id, action_id UNIQUE, kind, scheduled_for_ms, status,
                         attempts, max_attempts, last_attempt_ms, error_message,
                         created_ms)

    The pipeline only persists the intent to verify. Whoever watches the
    settlement layer polls due() and reports back through the orchestrator.

    Task lifecycle:
      pending -> processing (claim) -> completed | pending (reschedule) | failed
      failed  -> pending (retry, operator driven)
    """

    db: SqliteDB
    default_delay_ms: int = 30_000
    max_attempts: int = 5
    now_ms: Callable[[], int] = field(default=_now_ms)

    def schedule(self, action_id: str, kind: str, *, delay_ms: Optional[int] = None) -> bool:
        """Persist a verification task; returns False if one already exists for the action."""
        now = int(self.now_ms())
        delay = self.default_delay_ms if delay_ms is None else int(delay_ms)
        with self.db.write_tx() as con:
            cur = con.execute(
                """
                INSERT INTO verification_queue(action_id, kind, scheduled_for_ms, status, attempts, max_attempts, created_ms)
                VALUES(?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(action_id) DO NOTHING;
                """,
                (str(action_id), str(kind), now + max(0, delay), TASK_PENDING, int(self.max_attempts), now),
            )
            inserted = int(cur.rowcount or 0) == 1

        if inserted:
            inc_counter("verification_scheduled_total", 1)
            log_event(log, "verification_scheduled", action_id=str(action_id), kind=str(kind), delay_ms=delay)
        return inserted

    def get(self, task_id: int) -> Optional[VerificationTask]:
        with self.db.connection() as con:
            row = con.execute("SELECT * FROM verification_queue WHERE id=? LIMIT 1;", (int(task_id),)).fetchone()
        return VerificationTask.from_row(row) if row is not None else None

    def get_for_action(self, action_id: str) -> Optional[VerificationTask]:
        with self.db.connection() as con:
            row = con.execute(
                "SELECT * FROM verification_queue WHERE action_id=? LIMIT 1;", (str(action_id),)
            ).fetchone()
        return VerificationTask.from_row(row) if row is not None else None

    def due(self, *, limit: int = 10, now_ms: Optional[int] = None) -> List[VerificationTask]:
        now = int(self.now_ms()) if now_ms is None else int(now_ms)
        lim = int(limit) if int(limit) > 0 else 10
        with self.db.connection() as con:
            rows = con.execute(
                """
                SELECT * FROM verification_queue
                WHERE status=? AND scheduled_for_ms <= ? AND attempts < max_attempts
                ORDER BY scheduled_for_ms ASC, id ASC
                LIMIT ?;
                """,
                (TASK_PENDING, now, lim),
            ).fetchall()
        return [VerificationTask.from_row(r) for r in rows]

    def claim(self, task_id: int) -> Optional[VerificationTask]:
        """Move a pending task to processing and count the attempt.

        Returns None if another worker got there first.
        """
        now = int(self.now_ms())
        with self.db.write_tx() as con:
            cur = con.execute(
                """
                UPDATE verification_queue
                SET status=?, attempts=attempts + 1, last_attempt_ms=?
                WHERE id=? AND status=?;
                """,
                (TASK_PROCESSING, now, int(task_id), TASK_PENDING),
            )
            if int(cur.rowcount or 0) != 1:
                return None
            row = con.execute("SELECT * FROM verification_queue WHERE id=?;", (int(task_id),)).fetchone()
        return VerificationTask.from_row(row)

    def _set_status(self, task_id: int, status: str, *, error: Optional[str] = None) -> None:
        with self.db.write_tx() as con:
            con.execute(
                "UPDATE verification_queue SET status=?, error_message=? WHERE id=?;",
                (status, error, int(task_id)),
            )

    def complete(self, task_id: int) -> None:
        self._set_status(task_id, TASK_COMPLETED)

    def fail(self, task_id: int, error: str) -> None:
        self._set_status(task_id, TASK_FAILED, error=str(error))
        inc_counter("verification_task_failed_total", 1)
        log_event(log, "verification_task_failed", level=logging.WARNING, task_id=int(task_id), error=str(error))

    def reschedule(self, task_id: int, *, delay_ms: int, error: Optional[str] = None) -> None:
        now = int(self.now_ms())
        with self.db.write_tx() as con:
            con.execute(
                """
                UPDATE verification_queue
                SET status=?, scheduled_for_ms=?, error_message=?
                WHERE id=?;
                """,
                (TASK_PENDING, now + max(0, int(delay_ms)), error, int(task_id)),
            )

    def retry(self, task_id: int) -> bool:
        """Operator action: put a failed task back in the queue, due now."""
        now = int(self.now_ms())
        with self.db.write_tx() as con:
            cur = con.execute(
                """
                UPDATE verification_queue
                SET status=?, attempts=0, scheduled_for_ms=?, error_message=NULL
                WHERE id=? AND status=?;
                """,
                (TASK_PENDING, now, int(task_id), TASK_FAILED),
            )
            ok = int(cur.rowcount or 0) == 1
        if ok:
            log_event(log, "verification_task_retried", task_id=int(task_id))
        return ok

    def failed_tasks(self, *, limit: int = 50) -> List[VerificationTask]:
        lim = int(limit) if int(limit) > 0 else 50
        with self.db.connection() as con:
            rows = con.execute(
                """
                SELECT * FROM verification_queue
                WHERE status=?
                ORDER BY last_attempt_ms DESC, id DESC
                LIMIT ?;
                """,
                (TASK_FAILED, lim),
            ).fetchall()
        return [VerificationTask.from_row(r) for r in rows]

    def stats(self) -> List[Json]:
        with self.db.connection() as con:
            rows = con.execute(
                """
                SELECT kind, status, COUNT(1) AS n, AVG(attempts) AS avg_attempts
                FROM verification_queue
                GROUP BY kind, status
                ORDER BY kind ASC, status ASC;
                """
            ).fetchall()
        return [
            {
                "kind": str(r["kind"]),
                "status": str(r["status"]),
                "count": int(r["n"]),
                "avg_attempts": float(r["avg_attempts"] or 0.0),
            }
            for r in rows
        ]

    def cleanup(self, *, older_than_days: int = 7) -> int:
        """Delete completed tasks created more than `older_than_days` ago."""
        cutoff = int(self.now_ms()) - max(0, int(older_than_days)) * DAY_MS
        with self.db.write_tx() as con:
            cur = con.execute(
                "DELETE FROM verification_queue WHERE status=? AND created_ms < ?;",
                (TASK_COMPLETED, cutoff),
            )
            n = int(cur.rowcount or 0)
        if n:
            log_event(log, "verification_cleanup", deleted=n, older_than_days=int(older_than_days))
        return n
