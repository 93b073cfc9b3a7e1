# src/actionflow/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding for persisted blobs (payloads, results)."""
    # Unknown types must fail fast rather than be coerced with default=str;
    # a payload we cannot round-trip is not a payload we should persist.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(str(raw))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except Exception:
        return int(default)


class SqliteDB:
    """SQLite manager for the action pipeline.

    Design goals:
      - single durable DB file for the action log, verification queue and
        every domain position table
      - cross-thread safe by never sharing connections
      - all writes go through write_tx(), which is the transactional scope
        strategies mutate under

    SQLite allows one writer at a time, so `BEGIN IMMEDIATE` serialises
    concurrent writers for the same position row (and everything else).
    Contention surfaces as "database is locked"; write_tx() retries the
    BEGIN with bounded, jittered backoff.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str, mode: str = "prod") -> None:
        self.path = str(path)
        self.mode = str(mode or "prod").strip().lower()

    def _sqlite_synchronous_pragma(self) -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults (from the pipeline mode):
          - prod -> FULL
          - dev  -> NORMAL

        Override with ACTIONFLOW_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        default = "FULL" if self.mode == "prod" else "NORMAL"
        raw = (os.environ.get("ACTIONFLOW_SQLITE_SYNCHRONOUS") or default).strip().upper()

        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("ACTIONFLOW_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL lets readers proceed while a writer holds the lock.
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        allow_non_wal = (os.environ.get("ACTIONFLOW_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        if mode and mode != "wal" and not allow_non_wal:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        wal_ckpt = max(1, _env_int("ACTIONFLOW_SQLITE_WAL_AUTOCHECKPOINT", 1000))
        con.execute(f"PRAGMA wal_autocheckpoint={wal_ckpt};")

        # Negative means KiB. Default 64 MiB.
        cache_kib = max(0, _env_int("ACTIONFLOW_SQLITE_CACHE_SIZE_KIB", 64 * 1024))
        con.execute(f"PRAGMA cache_size={-cache_kib};")

        busy_ms = max(0, _env_int("ACTIONFLOW_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            # Audit trail. Rows are inserted once and only ever have their
            # status/verification columns updated.
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS action_log (
                  id TEXT PRIMARY KEY,
                  actor_key TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  external_ref TEXT,
                  status TEXT NOT NULL CHECK (status IN ('pending', 'confirmed', 'failed')),
                  optimistic_applied INTEGER NOT NULL,
                  verification_json TEXT,
                  created_ms INTEGER NOT NULL,
                  confirmed_ms INTEGER,
                  failed_ms INTEGER
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_action_log_actor ON action_log(actor_key, created_ms);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_action_log_status ON action_log(status);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS verification_queue (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  action_id TEXT NOT NULL UNIQUE REFERENCES action_log(id),
                  kind TEXT NOT NULL,
                  scheduled_for_ms INTEGER NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending',
                  attempts INTEGER NOT NULL DEFAULT 0,
                  max_attempts INTEGER NOT NULL,
                  last_attempt_ms INTEGER,
                  error_message TEXT,
                  created_ms INTEGER NOT NULL
                );
                """
            )
            con.execute(
                "CREATE INDEX IF NOT EXISTS idx_verification_due ON verification_queue(status, scheduled_for_ms);"
            )

            # Staking family position, one row per actor.
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS staker_positions (
                  actor_key TEXT PRIMARY KEY,
                  locked_amount INTEGER NOT NULL DEFAULT 0,
                  rewards_earned INTEGER NOT NULL DEFAULT 0,
                  status TEXT NOT NULL,
                  last_action_kind TEXT,
                  last_action_ref TEXT,
                  last_action_ms INTEGER,
                  last_claim_ms INTEGER,
                  estimated_confirmation_ms INTEGER,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_ms INTEGER NOT NULL,
                  updated_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS yield_calculations (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  method TEXT NOT NULL,
                  locked_total INTEGER NOT NULL,
                  annual_rewards_estimate REAL NOT NULL,
                  yield_pct REAL NOT NULL,
                  trigger TEXT NOT NULL,
                  created_ms INTEGER NOT NULL
                );
                """
            )

            # Commit family: contributor aggregates, idempotency-keyed
            # commit records and per-day counters.
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS contributors (
                  actor_key TEXT PRIMARY KEY,
                  github_username TEXT,
                  display_name TEXT,
                  total_commits INTEGER NOT NULL DEFAULT 0,
                  total_rewards INTEGER NOT NULL DEFAULT 0,
                  last_commit_ms INTEGER,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_ms INTEGER NOT NULL,
                  updated_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS commits (
                  commit_hash TEXT PRIMARY KEY,
                  actor_key TEXT NOT NULL,
                  action_id TEXT NOT NULL,
                  repository TEXT,
                  commit_message TEXT,
                  commit_url TEXT,
                  tags_json TEXT NOT NULL,
                  priority TEXT NOT NULL,
                  reward_amount INTEGER NOT NULL,
                  processed_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_commits_actor ON commits(actor_key, processed_ms);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_commits_processed ON commits(processed_ms);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS daily_commit_stats (
                  actor_key TEXT NOT NULL,
                  day TEXT NOT NULL,
                  commit_count INTEGER NOT NULL,
                  total_rewards INTEGER NOT NULL,
                  PRIMARY KEY (actor_key, day)
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except Exception:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    def _backoff_sleep(self, attempt: int, base_sleep: float, max_sleep: float) -> None:
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        time.sleep(sleep_s * (0.5 + random.random()))

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise (fail closed) if we cannot acquire within deadline

        Any exception raised inside the block rolls the whole transaction back
        and is re-raised unchanged.
        """
        deadline_ms = max(250, _env_int("ACTIONFLOW_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms

        base_sleep = max(0.001, float(_env_int("ACTIONFLOW_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("ACTIONFLOW_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    self._backoff_sleep(attempt, base_sleep, max_sleep)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                            raise
                        self._backoff_sleep(c_attempt, base_sleep, max_sleep)
                        c_attempt += 1
            except Exception:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise
