# src/actionflow/runtime/strategies/commit.py
"""
Commit strategy: reward-earning actions keyed by commit hash.

Commits are final at submission. They never carry a settlement reference, are
never scheduled for verification, and have no compensation; rollback() on a
commit is refused before anything is touched.

Within one UTC day an actor earns rewards for at most `daily_cap` commits.
Commits past the cap are still recorded (so the day's count keeps growing)
but earn 0. The contributor's running totals are recounted from every
recorded commit, but only when a commit earns a reward.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from actionflow.runtime.action_types import Action, BroadcastMessage
from actionflow.runtime.errors import DuplicateAction, RollbackUnsupported
from actionflow.runtime.rewards import RewardCalculator, TieredRewardCalculator
from actionflow.runtime.schemas import CommitPayload, validate_payload
from actionflow.runtime.strategies.base import ActionStrategy, TxScope, row_to_json, user_room

Json = Dict[str, Any]

DAY_MS = 24 * 60 * 60 * 1000

COMMIT_ROOMS = ("global", "leaderboard")


def utc_day(now_ms: int) -> str:
    return datetime.fromtimestamp(int(now_ms) / 1000.0, tz=timezone.utc).strftime("%Y-%m-%d")


def utc_day_bounds(now_ms: int) -> Tuple[int, int]:
    start = (int(now_ms) // DAY_MS) * DAY_MS
    return start, start + DAY_MS


def count_commits_for_day(con: sqlite3.Connection, actor_key: str, now_ms: int) -> int:
    start, end = utc_day_bounds(now_ms)
    row = con.execute(
        "SELECT COUNT(1) AS n FROM commits WHERE actor_key=? AND processed_ms >= ? AND processed_ms < ?;",
        (actor_key, start, end),
    ).fetchone()
    return int(row["n"]) if row is not None else 0


def daily_limit_status(con: sqlite3.Connection, actor_key: str, now_ms: int, *, cap: int = 10) -> Json:
    current = count_commits_for_day(con, actor_key, now_ms)
    return {
        "day": utc_day(now_ms),
        "current_count": current,
        "limit": int(cap),
        "is_at_limit": current >= int(cap),
        "remaining": max(0, int(cap) - current),
    }


def get_commit(con: sqlite3.Connection, commit_hash: str) -> Optional[Json]:
    row = con.execute("SELECT * FROM commits WHERE commit_hash=?;", (commit_hash,)).fetchone()
    out = row_to_json(row)
    if out is not None:
        out["tags"] = json.loads(out.pop("tags_json") or "[]")
    return out


def commits_for_actor(con: sqlite3.Connection, actor_key: str, *, limit: int = 20) -> List[Json]:
    rows = con.execute(
        """
        SELECT c.*, u.github_username, u.display_name
        FROM commits c
        LEFT JOIN contributors u ON u.actor_key = c.actor_key
        WHERE c.actor_key=?
        ORDER BY c.processed_ms DESC, c.commit_hash ASC
        LIMIT ?;
        """,
        (actor_key, int(limit)),
    ).fetchall()
    out: List[Json] = []
    for r in rows:
        d = row_to_json(r) or {}
        d["tags"] = json.loads(d.pop("tags_json") or "[]")
        out.append(d)
    return out


def get_contributor(con: sqlite3.Connection, actor_key: str) -> Optional[Json]:
    row = con.execute("SELECT * FROM contributors WHERE actor_key=?;", (actor_key,)).fetchone()
    return row_to_json(row)


def ensure_contributor(con: sqlite3.Connection, actor_key: str, github_username: Optional[str], now_ms: int) -> Json:
    """Find or create the contributor row; refresh the GitHub username if it changed."""
    cur = get_contributor(con, actor_key)
    if cur is None:
        con.execute(
            """
            INSERT INTO contributors(actor_key, github_username, display_name, created_ms, updated_ms)
            VALUES(?, ?, ?, ?, ?);
            """,
            (actor_key, github_username, github_username, now_ms, now_ms),
        )
    elif github_username and cur.get("github_username") != github_username:
        con.execute(
            "UPDATE contributors SET github_username=?, updated_ms=? WHERE actor_key=?;",
            (github_username, now_ms, actor_key),
        )
    return get_contributor(con, actor_key) or {}


_RANKED = """
WITH ranked AS (
  SELECT
    actor_key,
    github_username,
    display_name,
    total_commits,
    total_rewards,
    last_commit_ms,
    RANK() OVER (ORDER BY total_rewards DESC, total_commits DESC) AS rank
  FROM contributors
  WHERE is_active=1
)
"""


def leaderboard(con: sqlite3.Connection, *, limit: int = 20) -> List[Json]:
    rows = con.execute(
        _RANKED + "SELECT * FROM ranked ORDER BY rank ASC, actor_key ASC LIMIT ?;",
        (int(limit),),
    ).fetchall()
    return [row_to_json(r) for r in rows]  # type: ignore[misc]


def rank_of(con: sqlite3.Connection, actor_key: str) -> Optional[int]:
    row = con.execute(_RANKED + "SELECT rank FROM ranked WHERE actor_key=?;", (actor_key,)).fetchone()
    return int(row["rank"]) if row is not None else None


def rank_neighbors(con: sqlite3.Connection, actor_key: str, *, window: int = 3) -> List[str]:
    """Actor keys whose rank is within +/- `window` of `actor_key`'s rank (inclusive)."""
    rows = con.execute(
        _RANKED
        + """
        SELECT r.actor_key
        FROM ranked r, (SELECT rank FROM ranked WHERE actor_key=?) a
        WHERE r.rank BETWEEN a.rank - ? AND a.rank + ?
        ORDER BY r.rank ASC, r.actor_key ASC;
        """,
        (actor_key, int(window), int(window)),
    ).fetchall()
    return [str(r["actor_key"]) for r in rows]


class CommitStrategy(ActionStrategy):
    kind = "commit"
    forbids_external_ref = True
    supports_rollback = False

    def __init__(
        self,
        *,
        reward_calculator: Optional[RewardCalculator] = None,
        daily_cap: int = 10,
        rank_window: int = 3,
        leaderboard_limit: int = 20,
    ) -> None:
        self.reward_calculator: RewardCalculator = reward_calculator or TieredRewardCalculator()
        self.daily_cap = int(daily_cap)
        self.rank_window = int(rank_window)
        self.leaderboard_limit = int(leaderboard_limit)

    def apply(self, scope: TxScope, action: Action) -> Json:
        con, now = scope.con, scope.now_ms
        p: CommitPayload = validate_payload(CommitPayload, action.payload, kind=self.kind)  # type: ignore[assignment]

        if get_commit(con, p.commit_hash) is not None:
            raise DuplicateAction(
                details={"commit_hash": p.commit_hash, "message": f"Commit {p.commit_hash} already processed"}
            )

        ensure_contributor(con, action.actor_key, p.github_username, now)

        daily_count = count_commits_for_day(con, action.actor_key, now)
        at_limit = daily_count >= self.daily_cap

        reward = 0
        if not at_limit:
            context = {
                "actor_key": action.actor_key,
                "commit_hash": p.commit_hash,
                "repository": p.repository,
                "daily_count": daily_count,
            }
            reward = max(0, int(self.reward_calculator(list(p.tags), p.priority, context)))

        con.execute(
            """
            INSERT INTO commits(
              commit_hash, actor_key, action_id, repository, commit_message,
              commit_url, tags_json, priority, reward_amount, processed_ms
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                p.commit_hash,
                action.actor_key,
                action.id,
                p.repository,
                p.commit_message,
                p.commit_url,
                json.dumps(list(p.tags)),
                p.priority,
                reward,
                now,
            ),
        )

        if reward > 0:
            con.execute(
                """
                UPDATE contributors SET
                  total_commits=(SELECT COUNT(1) FROM commits WHERE actor_key=contributors.actor_key),
                  total_rewards=(SELECT COALESCE(SUM(reward_amount), 0) FROM commits WHERE actor_key=contributors.actor_key),
                  last_commit_ms=?,
                  updated_ms=?
                WHERE actor_key=?;
                """,
                (now, now, action.actor_key),
            )

        con.execute(
            """
            INSERT INTO daily_commit_stats(actor_key, day, commit_count, total_rewards)
            VALUES(?, ?, 1, ?)
            ON CONFLICT(actor_key, day) DO UPDATE SET
              commit_count=daily_commit_stats.commit_count + 1,
              total_rewards=daily_commit_stats.total_rewards + excluded.total_rewards;
            """,
            (action.actor_key, utc_day(now), reward),
        )

        return {
            "action_kind": self.kind,
            "commit": get_commit(con, p.commit_hash),
            "contributor": get_contributor(con, action.actor_key),
            "reward_amount": reward,
            "is_at_daily_limit": at_limit,
            "current_daily_commits": daily_count + 1,
            "leaderboard": leaderboard(con, limit=self.leaderboard_limit),
        }

    def prepare_broadcast(self, scope: TxScope, action: Action, result: Json) -> BroadcastMessage:
        commit = result.get("commit") or {}
        return BroadcastMessage(
            type="commit_update",
            rooms=[*COMMIT_ROOMS, user_room(action.actor_key)],
            data={
                "action_kind": self.kind,
                "actor_key": action.actor_key,
                "commit_hash": commit.get("commit_hash"),
                "repository": commit.get("repository"),
                "commit": commit,
                "contributor": result.get("contributor"),
                "reward_amount": result.get("reward_amount"),
                "is_at_daily_limit": result.get("is_at_daily_limit"),
                "current_daily_commits": result.get("current_daily_commits"),
                "leaderboard": result.get("leaderboard"),
                "affected_users": rank_neighbors(scope.con, action.actor_key, window=self.rank_window),
                "timestamp_ms": scope.now_ms,
            },
            action_id=action.id,
        )

    def compensate(self, scope: TxScope, action: Action) -> None:
        raise RollbackUnsupported(details={"kind": self.kind, "action_id": action.id})

    def prepare_rollback_broadcast(self, scope: TxScope, action: Action) -> Optional[BroadcastMessage]:
        return None
