# src/actionflow/runtime/orchestrator.py
"""
Action orchestrator: optimistic apply, then confirm or compensate.

process():
  one write transaction covers
    (1) action_log row (pending, optimistic_applied=1)
    (2) strategy lookup
    (3) strategy.apply()
    (4) strategy.prepare_broadcast()
  Any failure in (1)-(4) rolls all of it back and surfaces as
  ActionProcessingFailed. After COMMIT the broadcast is dispatched and, when
  the action carries an external_ref, a verification task is scheduled.
  Neither post-commit step can fail the call.

confirm():  pending -> confirmed. The optimistic mutation stands as is.
rollback(): pending -> failed, after strategy.compensate() has reversed the
            optimistic mutation inside the same transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from typing import Any, Callable, Dict, Optional, Union

from actionflow.runtime.action_ledger import ActionLedger
from actionflow.runtime.action_types import (
    Action,
    ActionRecord,
    ActionRequest,
    BroadcastMessage,
    ProcessResult,
)
from actionflow.runtime.broadcast import Dispatcher, NullDispatcher
from actionflow.runtime.config import PipelineConfig, default_pipeline_config
from actionflow.runtime.errors import (
    ActionError,
    ActionNotFound,
    ActionProcessingFailed,
    CompensationFailed,
    InvalidTransition,
    RollbackUnsupported,
    TransactionError,
)
from actionflow.runtime.metrics import inc_counter
from actionflow.runtime.registry import StrategyRegistry
from actionflow.runtime.sqlite_db import SqliteDB
from actionflow.runtime.strategies.base import TxScope
from actionflow.runtime.structured_logging import log_event
from actionflow.runtime.verification_queue import VerificationScheduler

Json = Dict[str, Any]

log = logging.getLogger("actionflow.orchestrator")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_action_id() -> str:
    return uuid.uuid4().hex


def _storage_error(err: sqlite3.Error, *, where: str) -> TransactionError:
    return TransactionError(details={"where": where, "error": f"{type(err).__name__}:{err}"})


class ActionOrchestrator:
    def __init__(
        self,
        *,
        db: SqliteDB,
        ledger: ActionLedger,
        registry: StrategyRegistry,
        scheduler: VerificationScheduler,
        dispatcher: Optional[Dispatcher] = None,
        cfg: Optional[PipelineConfig] = None,
        now_ms: Callable[[], int] = _now_ms,
        id_factory: Callable[[], str] = _new_action_id,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.registry = registry
        self.scheduler = scheduler
        self.dispatcher: Dispatcher = dispatcher or NullDispatcher()
        self.cfg = cfg or default_pipeline_config()
        self._now_ms = now_ms
        self._id_factory = id_factory

    # ------------------------------------------------------------------
    # process
    # ------------------------------------------------------------------

    def process(self, request: Union[ActionRequest, Json]) -> ProcessResult:
        kind = str(request.get("kind") or "") if isinstance(request, dict) else str(getattr(request, "kind", "") or "")
        try:
            req = ActionRequest.from_json(request)
            kind = req.kind
            action = Action.bind(self._id_factory(), req)
            now = int(self._now_ms())

            with self.db.write_tx() as con:
                scope = TxScope(con=con, now_ms=now)
                self.ledger.record(con, action, now_ms=now)
                strategy = self.registry.resolve(action.kind)
                strategy.check_request(action)
                domain_result = strategy.apply(scope, action)
                message = strategy.prepare_broadcast(scope, action, domain_result)
        except Exception as err:
            cause: Exception = _storage_error(err, where="process") if isinstance(err, sqlite3.Error) else err
            failure = ActionProcessingFailed.wrap(kind, cause)
            inc_counter("actions_failed_total", 1, kind=kind or "unknown")
            log_event(
                log,
                "action_failed",
                level=logging.WARNING,
                kind=kind,
                reason=failure.reason,
                details=failure.details,
            )
            raise failure from cause

        inc_counter("actions_processed_total", 1, kind=action.kind)
        log_event(
            log,
            "action_processed",
            action_id=action.id,
            kind=action.kind,
            actor_key=action.actor_key,
            external_ref=action.external_ref,
        )

        self._dispatch(message)
        scheduled = self._schedule(action) if action.external_ref else False

        return ProcessResult(
            id=action.id,
            kind=action.kind,
            domain_result=domain_result,
            verification_scheduled=scheduled,
            broadcast=message,
        )

    # ------------------------------------------------------------------
    # confirm / rollback
    # ------------------------------------------------------------------

    def confirm(self, action_id: str, verification_result: Optional[Json] = None) -> ActionRecord:
        """Mark a pending action confirmed. Domain state is not touched."""
        now = int(self._now_ms())
        result = dict(verification_result or {})
        try:
            with self.db.write_tx() as con:
                self.ledger.mark_confirmed(con, action_id, result, now_ms=now)
                rec = self.ledger.get_for_update(con, action_id)
        except sqlite3.Error as err:
            raise _storage_error(err, where="confirm") from err

        inc_counter("actions_confirmed_total", 1, kind=rec.kind)
        log_event(log, "action_confirmed", action_id=rec.id, kind=rec.kind, actor_key=rec.actor_key)
        return rec

    def rollback(self, action_id: str, reason: str) -> ActionRecord:
        """Compensate a pending action and mark it failed with {"error": reason}.

        Raises:
          ActionNotFound       unknown id
          RollbackUnsupported  the kind has no compensation (commits)
          InvalidTransition    the action is already confirmed or failed
          CompensationFailed   compensate() raised; nothing was changed and
                               an operator has to reconcile
        """
        now = int(self._now_ms())
        why = str(reason or "").strip() or "unspecified"
        message: Optional[BroadcastMessage] = None
        try:
            with self.db.write_tx() as con:
                rec = self.ledger.get_for_update(con, action_id)
                strategy = self.registry.resolve(rec.kind)
                if not strategy.supports_rollback:
                    raise RollbackUnsupported(details={"action_id": rec.id, "kind": rec.kind})
                if rec.is_terminal:
                    raise InvalidTransition(details={"action_id": rec.id, "status": rec.status, "requested": "failed"})

                scope = TxScope(con=con, now_ms=now)
                action = rec.as_action()
                try:
                    strategy.compensate(scope, action)
                    message = strategy.prepare_rollback_broadcast(scope, action)
                except Exception as err:
                    raise CompensationFailed(
                        reason=getattr(err, "code", None) or type(err).__name__,
                        details={"action_id": rec.id, "kind": rec.kind, "rollback_reason": why, "error": str(err)},
                    ) from err

                self.ledger.mark_failed(con, rec.id, {"error": why}, now_ms=now)
                out = self.ledger.get_for_update(con, rec.id)
        except CompensationFailed as cf:
            inc_counter("compensation_failed_total", 1)
            log_event(log, "compensation_failed", level=logging.CRITICAL, reason=cf.reason, details=cf.details)
            raise
        except ActionError:
            raise
        except sqlite3.Error as err:
            raise _storage_error(err, where="rollback") from err

        inc_counter("actions_rolled_back_total", 1, kind=out.kind)
        log_event(
            log,
            "action_rolled_back",
            level=logging.WARNING,
            action_id=out.id,
            kind=out.kind,
            actor_key=out.actor_key,
            reason=why,
        )

        self._dispatch(message)
        return out

    def get(self, action_id: str) -> ActionRecord:
        rec = self.ledger.fetch(action_id)
        if rec is None:
            raise ActionNotFound(details={"action_id": str(action_id)})
        return rec

    # ------------------------------------------------------------------
    # post-commit side effects (never raise)
    # ------------------------------------------------------------------

    def _dispatch(self, message: Optional[BroadcastMessage]) -> None:
        if message is None:
            return
        try:
            self.dispatcher.dispatch(message)
        except Exception as err:
            inc_counter("broadcast_failed_total", 1)
            log_event(
                log,
                "broadcast_failed",
                level=logging.WARNING,
                type=message.type,
                action_id=message.action_id,
                error=f"{type(err).__name__}:{err}",
            )

    def _schedule(self, action: Action) -> bool:
        try:
            return self.scheduler.schedule(action.id, action.kind, delay_ms=self.cfg.verification_delay_ms)
        except Exception as err:
            inc_counter("verification_schedule_failed_total", 1)
            log_event(
                log,
                "verification_schedule_failed",
                level=logging.WARNING,
                action_id=action.id,
                kind=action.kind,
                error=f"{type(err).__name__}:{err}",
            )
            return False
