# src/actionflow/runtime/strategies/staking.py
"""
Staking family strategies: stake, unstake, claim.

All three share one position row per actor in `staker_positions`. Stake and
unstake move `locked_amount` and recompute the global yield metric; claim
moves `rewards_earned` only.

Floors: unstake and the stake/claim reversals clamp at zero instead of
rejecting. Whether an over-unstake should be an error is an open question;
the clamping is kept and covered by tests as a known edge case.
"""

from __future__ import annotations

import sqlite3
from abc import abstractmethod
from typing import Any, Dict, List, Optional

from actionflow.runtime.action_types import Action, BroadcastMessage
from actionflow.runtime.errors import ActionError, ValidationError
from actionflow.runtime.metrics import set_gauge
from actionflow.runtime.schemas import StakingPayload, validate_payload
from actionflow.runtime.strategies.base import ActionStrategy, TxScope, row_to_json, user_room

Json = Dict[str, Any]

DAY_MS = 24 * 60 * 60 * 1000

POSITION_PENDING = "pending_confirmation"
POSITION_FAILED = "failed"

STAKING_ROOMS = ("global", "staking")


def get_position(con: sqlite3.Connection, actor_key: str) -> Optional[Json]:
    row = con.execute("SELECT * FROM staker_positions WHERE actor_key=?;", (actor_key,)).fetchone()
    return row_to_json(row)


def total_locked(con: sqlite3.Connection) -> int:
    row = con.execute(
        "SELECT COALESCE(SUM(locked_amount), 0) AS n FROM staker_positions WHERE is_active=1;"
    ).fetchone()
    return int(row["n"]) if row is not None else 0


def average_daily_rewards(con: sqlite3.Connection, *, now_ms: int, window_days: int) -> float:
    """Mean of per-UTC-day reward emission over the trailing window.

    Days without any commit do not count towards the mean.
    """
    since_ms = int(now_ms) - int(window_days) * DAY_MS
    row = con.execute(
        """
        SELECT COALESCE(AVG(daily), 0) AS avg_daily FROM (
          SELECT date(processed_ms / 1000, 'unixepoch') AS day, SUM(reward_amount) AS daily
          FROM commits
          WHERE processed_ms >= ?
          GROUP BY day
        );
        """,
        (since_ms,),
    ).fetchone()
    return float(row["avg_daily"]) if row is not None else 0.0


def latest_yield(con: sqlite3.Connection) -> Optional[Json]:
    row = con.execute("SELECT * FROM yield_calculations ORDER BY id DESC LIMIT 1;").fetchone()
    return row_to_json(row)


def recompute_yield(
    con: sqlite3.Connection,
    *,
    now_ms: int,
    window_days: int,
    cap_pct: float,
    trigger: str,
) -> Json:
    """Recompute and persist the annualised staking yield.

    yield = trailing average daily emission * 365 / total locked * 100,
    clamped to [0, cap_pct]. Zero locked value yields 0.

    Concurrent writers on different actors may interleave here; the last
    recomputation wins.
    """
    locked = total_locked(con)
    avg_daily = average_daily_rewards(con, now_ms=now_ms, window_days=window_days)
    annual = avg_daily * 365.0

    pct = (annual / float(locked)) * 100.0 if locked > 0 else 0.0
    pct = min(max(0.0, pct), float(cap_pct))

    con.execute(
        """
        INSERT INTO yield_calculations(method, locked_total, annual_rewards_estimate, yield_pct, trigger, created_ms)
        VALUES('action_triggered', ?, ?, ?, ?, ?);
        """,
        (locked, annual, pct, str(trigger), int(now_ms)),
    )
    set_gauge("global_yield_bp", int(round(pct * 100)))

    return {
        "yield_pct": pct,
        "locked_total": locked,
        "annual_rewards_estimate": annual,
        "calculated_ms": int(now_ms),
    }


def global_metrics(con: sqlite3.Connection) -> Json:
    row = con.execute(
        """
        SELECT
          COALESCE(SUM(locked_amount), 0) AS total_locked,
          COUNT(CASE WHEN locked_amount > 0 THEN 1 END) AS total_stakers,
          COALESCE(SUM(rewards_earned), 0) AS total_rewards_earned
        FROM staker_positions
        WHERE is_active=1;
        """
    ).fetchone()
    latest = latest_yield(con)
    return {
        "total_locked": int(row["total_locked"]),
        "total_stakers": int(row["total_stakers"]),
        "total_rewards_earned": int(row["total_rewards_earned"]),
        "current_yield_pct": float(latest["yield_pct"]) if latest else 0.0,
    }


def top_stakers(con: sqlite3.Connection, limit: int) -> List[Json]:
    rows = con.execute(
        """
        SELECT
          actor_key,
          locked_amount,
          rewards_earned,
          last_action_ms,
          RANK() OVER (ORDER BY locked_amount DESC) AS rank
        FROM staker_positions
        WHERE is_active=1 AND locked_amount > 0
        ORDER BY locked_amount DESC, actor_key ASC
        LIMIT ?;
        """,
        (int(limit),),
    ).fetchall()
    return [row_to_json(r) for r in rows]  # type: ignore[misc]


def staking_overview(con: sqlite3.Connection, *, limit: int = 10) -> Json:
    return {
        "global_metrics": global_metrics(con),
        "current_yield": latest_yield(con),
        "top_stakers": top_stakers(con, limit),
    }


class _StakingStrategy(ActionStrategy):
    """Shared plumbing for the staking family."""

    requires_external_ref = True
    recomputes_yield = True

    def __init__(
        self,
        *,
        confirmation_window_ms: int = 30_000,
        yield_window_days: int = 7,
        yield_cap_pct: float = 9999.0,
        top_stakers_limit: int = 10,
    ) -> None:
        self.confirmation_window_ms = int(confirmation_window_ms)
        self.yield_window_days = int(yield_window_days)
        self.yield_cap_pct = float(yield_cap_pct)
        self.top_stakers_limit = int(top_stakers_limit)

    def _amount(self, action: Action) -> int:
        return int(validate_payload(StakingPayload, action.payload, kind=self.kind).amount)  # type: ignore[attr-defined]

    def _recompute(self, scope: TxScope, trigger: str) -> Json:
        return recompute_yield(
            scope.con,
            now_ms=scope.now_ms,
            window_days=self.yield_window_days,
            cap_pct=self.yield_cap_pct,
            trigger=trigger,
        )

    def _require_position(self, scope: TxScope, action: Action) -> None:
        if get_position(scope.con, action.actor_key) is None:
            raise ValidationError(
                "invalid_state",
                "position_not_found",
                {"kind": self.kind, "actor_key": action.actor_key},
            )

    def _mark_action(self, scope: TxScope, action: Action) -> None:
        scope.con.execute(
            """
            UPDATE staker_positions SET
              last_action_kind=?,
              last_action_ref=?,
              last_action_ms=?,
              status=?,
              estimated_confirmation_ms=?,
              updated_ms=?
            WHERE actor_key=?;
            """,
            (
                self.kind,
                action.external_ref,
                scope.now_ms,
                POSITION_PENDING,
                scope.now_ms + self.confirmation_window_ms,
                scope.now_ms,
                action.actor_key,
            ),
        )

    @abstractmethod
    def _mutate(self, scope: TxScope, action: Action, amount: int) -> None:
        """Apply the forward delta to the actor's position."""

    @abstractmethod
    def _reverse(self, scope: TxScope, action: Action, amount: int) -> None:
        """Undo the forward delta; the position row must exist."""

    def apply(self, scope: TxScope, action: Action) -> Json:
        amount = self._amount(action)
        self._mutate(scope, action, amount)

        yield_data = self._recompute(scope, "user_action") if self.recomputes_yield else None
        metrics = global_metrics(scope.con)

        return {
            "action_kind": self.kind,
            "amount": amount,
            "user_position": get_position(scope.con, action.actor_key),
            "global_metrics": metrics,
            "yield": yield_data,
        }

    def prepare_broadcast(self, scope: TxScope, action: Action, result: Json) -> BroadcastMessage:
        stakers = top_stakers(scope.con, self.top_stakers_limit) if self.recomputes_yield else None
        return BroadcastMessage(
            type="staking_update",
            rooms=[*STAKING_ROOMS, user_room(action.actor_key)],
            data={
                "action_kind": self.kind,
                "actor_key": action.actor_key,
                "amount": result.get("amount"),
                "external_ref": action.external_ref,
                "user_position": result.get("user_position"),
                "global_metrics": result.get("global_metrics"),
                "yield": result.get("yield"),
                "top_stakers": stakers,
                "timestamp_ms": scope.now_ms,
            },
            action_id=action.id,
        )

    def compensate(self, scope: TxScope, action: Action) -> None:
        amount = self._amount(action)
        if get_position(scope.con, action.actor_key) is None:
            raise ActionError("compensation", "position_missing", {"kind": self.kind, "actor_key": action.actor_key})

        self._reverse(scope, action, amount)
        if self.recomputes_yield:
            self._recompute(scope, "rollback")

    def prepare_rollback_broadcast(self, scope: TxScope, action: Action) -> BroadcastMessage:
        return BroadcastMessage(
            type="staking_rollback",
            rooms=[*STAKING_ROOMS, user_room(action.actor_key)],
            data={
                "action_kind": self.kind,
                "actor_key": action.actor_key,
                "user_position": get_position(scope.con, action.actor_key),
                "global_metrics": global_metrics(scope.con),
                "message": f"{self.kind} transaction failed and has been rolled back",
                "timestamp_ms": scope.now_ms,
            },
            action_id=action.id,
        )


class StakeStrategy(_StakingStrategy):
    kind = "stake"

    def _mutate(self, scope: TxScope, action: Action, amount: int) -> None:
        now = scope.now_ms
        scope.con.execute(
            """
            INSERT INTO staker_positions(
              actor_key, locked_amount, rewards_earned, status,
              last_action_kind, last_action_ref, last_action_ms,
              estimated_confirmation_ms, is_active, created_ms, updated_ms
            )
            VALUES(?, ?, 0, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(actor_key) DO UPDATE SET
              locked_amount=staker_positions.locked_amount + excluded.locked_amount,
              status=excluded.status,
              last_action_kind=excluded.last_action_kind,
              last_action_ref=excluded.last_action_ref,
              last_action_ms=excluded.last_action_ms,
              estimated_confirmation_ms=excluded.estimated_confirmation_ms,
              updated_ms=excluded.updated_ms;
            """,
            (
                action.actor_key,
                amount,
                POSITION_PENDING,
                self.kind,
                action.external_ref,
                now,
                now + self.confirmation_window_ms,
                now,
                now,
            ),
        )

    def _reverse(self, scope: TxScope, action: Action, amount: int) -> None:
        scope.con.execute(
            """
            UPDATE staker_positions SET
              locked_amount=MAX(locked_amount - ?, 0),
              status=?,
              updated_ms=?
            WHERE actor_key=?;
            """,
            (amount, POSITION_FAILED, scope.now_ms, action.actor_key),
        )


class UnstakeStrategy(_StakingStrategy):
    kind = "unstake"

    def _mutate(self, scope: TxScope, action: Action, amount: int) -> None:
        self._require_position(scope, action)
        scope.con.execute(
            "UPDATE staker_positions SET locked_amount=MAX(locked_amount - ?, 0) WHERE actor_key=?;",
            (amount, action.actor_key),
        )
        self._mark_action(scope, action)

    def _reverse(self, scope: TxScope, action: Action, amount: int) -> None:
        # Adds back the requested amount, not the amount actually removed when
        # the forward unstake was floored at zero.
        scope.con.execute(
            """
            UPDATE staker_positions SET
              locked_amount=locked_amount + ?,
              status=?,
              updated_ms=?
            WHERE actor_key=?;
            """,
            (amount, POSITION_FAILED, scope.now_ms, action.actor_key),
        )


class ClaimStrategy(_StakingStrategy):
    kind = "claim"
    recomputes_yield = False

    def _mutate(self, scope: TxScope, action: Action, amount: int) -> None:
        self._require_position(scope, action)
        scope.con.execute(
            "UPDATE staker_positions SET rewards_earned=rewards_earned + ?, last_claim_ms=? WHERE actor_key=?;",
            (amount, scope.now_ms, action.actor_key),
        )
        self._mark_action(scope, action)

    def _reverse(self, scope: TxScope, action: Action, amount: int) -> None:
        scope.con.execute(
            """
            UPDATE staker_positions SET
              rewards_earned=MAX(rewards_earned - ?, 0),
              status=?,
              updated_ms=?
            WHERE actor_key=?;
            """,
            (amount, POSITION_FAILED, scope.now_ms, action.actor_key),
        )
