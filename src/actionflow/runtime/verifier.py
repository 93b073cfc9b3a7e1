# src/actionflow/runtime/verifier.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

from actionflow.runtime.action_types import ActionRecord, VerificationTask
from actionflow.runtime.errors import CompensationFailed, InvalidTransition, RollbackUnsupported
from actionflow.runtime.metrics import inc_counter, set_gauge
from actionflow.runtime.orchestrator import ActionOrchestrator
from actionflow.runtime.structured_logging import log_event
from actionflow.runtime.verification_queue import VerificationScheduler

Json = Dict[str, Any]

if TYPE_CHECKING:
    from actionflow.runtime.context import PipelineContext

log = logging.getLogger("actionflow.verifier")

REASON_REVERTED = "tx_reverted"
REASON_TIMEOUT = "verification_timeout"


class SettlementState:
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class SettlementResult:
    state: str
    details: Json = field(default_factory=dict)


class SettlementChecker(Protocol):
    """Looks an action's external_ref up on the settlement layer."""

    def check(self, record: ActionRecord) -> SettlementResult: ...


class VerificationWorker:
    """Reference external verifier.

    For each due task:
      - confirmed  -> orchestrator.confirm(id, details)
      - failed     -> orchestrator.rollback(id, details["error"] or "tx_reverted")
      - pending, or the checker raised
                   -> reschedule after retry_ms * 2**(attempts-1); once the
                      task has used max_attempts, rollback(id, "verification_timeout")

    If confirm/rollback itself raises (a locked database, say), the task is
    rescheduled the same way, or parked as `failed` once its attempts are
    used up.

    A CompensationFailed leaves the task in `failed` for an operator. Tasks
    whose action is already terminal are completed without calling back.

    start()/stop() run run_once() on a daemon thread every poll_ms. Errors
    escaping run_once() back off exponentially up to error_backoff_max_ms.
    """

    def __init__(
        self,
        *,
        orchestrator: ActionOrchestrator,
        scheduler: VerificationScheduler,
        checker: SettlementChecker,
        retry_ms: int = 15_000,
        poll_ms: int = 15_000,
        batch_size: int = 10,
        error_backoff_min_ms: int = 250,
        error_backoff_max_ms: int = 10_000,
    ) -> None:
        self._orch = orchestrator
        self._scheduler = scheduler
        self._checker = checker
        self.retry_ms = max(1, int(retry_ms))
        self.poll_ms = max(1, int(poll_ms))
        self.batch_size = max(1, int(batch_size))
        self.error_backoff_min_ms = max(1, int(error_backoff_min_ms))
        self.error_backoff_max_ms = max(self.error_backoff_min_ms, int(error_backoff_max_ms))

        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._started = False
        self._consecutive_failures = 0
        self._last_error = ""

    @property
    def started(self) -> bool:
        return self._started

    @property
    def last_error(self) -> str:
        return self._last_error

    def backoff_ms(self, attempts: int) -> int:
        return self.retry_ms * (2 ** max(0, int(attempts) - 1))

    # ------------------------------------------------------------------
    # one pass
    # ------------------------------------------------------------------

    def run_once(self) -> Dict[str, int]:
        outcomes: Dict[str, int] = {}
        for task in self._scheduler.due(limit=self.batch_size):
            outcome = self.process_task(task)
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    def process_task(self, task: VerificationTask) -> str:
        claimed = self._scheduler.claim(task.id)
        if claimed is None:
            return "skipped"

        rec = self._orch.ledger.fetch(claimed.action_id)
        if rec is None:
            self._scheduler.fail(claimed.id, "action_missing")
            return "missing"
        if rec.is_terminal:
            self._scheduler.complete(claimed.id)
            return "already_terminal"

        error: Optional[str] = None
        try:
            result = self._checker.check(rec)
        except Exception as err:
            error = f"{type(err).__name__}:{err}"
            result = SettlementResult(state=SettlementState.PENDING, details={"error": error})
            inc_counter("verifier_check_errors_total", 1)
            log_event(log, "verification_check_error", level=logging.WARNING, action_id=rec.id, error=error)

        if result.state == SettlementState.CONFIRMED:
            return self._confirm(claimed, result.details)

        if result.state == SettlementState.FAILED:
            reason = str((result.details or {}).get("error") or REASON_REVERTED)
            return self._rollback(claimed, reason)

        if claimed.attempts >= claimed.max_attempts:
            return self._rollback(claimed, REASON_TIMEOUT)

        delay = self.backoff_ms(claimed.attempts)
        self._scheduler.reschedule(claimed.id, delay_ms=delay, error=error)
        inc_counter("verifier_rescheduled_total", 1)
        log_event(
            log,
            "verification_rescheduled",
            action_id=claimed.action_id,
            attempts=claimed.attempts,
            delay_ms=delay,
        )
        return "rescheduled"

    def _confirm(self, task: VerificationTask, details: Json) -> str:
        try:
            self._orch.confirm(task.action_id, details)
        except InvalidTransition:
            self._scheduler.complete(task.id)
            return "already_terminal"
        except Exception as err:
            return self._callback_error(task, err)
        self._scheduler.complete(task.id)
        inc_counter("verifier_confirmed_total", 1)
        log_event(log, "verification_confirmed", action_id=task.action_id, attempts=task.attempts)
        return "confirmed"

    def _rollback(self, task: VerificationTask, reason: str) -> str:
        try:
            self._orch.rollback(task.action_id, reason)
        except CompensationFailed as cf:
            self._scheduler.fail(task.id, f"{cf.code}:{cf.reason}")
            inc_counter("verifier_compensation_failed_total", 1)
            return "compensation_failed"
        except (InvalidTransition, RollbackUnsupported):
            self._scheduler.complete(task.id)
            return "already_terminal"
        except Exception as err:
            return self._callback_error(task, err)
        self._scheduler.complete(task.id)
        inc_counter("verifier_rolled_back_total", 1)
        log_event(
            log,
            "verification_rolled_back",
            level=logging.WARNING,
            action_id=task.action_id,
            reason=reason,
            attempts=task.attempts,
        )
        return "timed_out" if reason == REASON_TIMEOUT else "rolled_back"

    def _callback_error(self, task: VerificationTask, err: Exception) -> str:
        # The task is still `processing`; put it back or park it, never leave it claimed.
        error = f"{type(err).__name__}:{err}"
        inc_counter("verifier_callback_errors_total", 1)
        if task.attempts >= task.max_attempts:
            self._scheduler.fail(task.id, error)
            return "failed"
        delay = self.backoff_ms(task.attempts)
        self._scheduler.reschedule(task.id, delay_ms=delay, error=error)
        log_event(
            log,
            "verification_callback_error",
            level=logging.WARNING,
            action_id=task.action_id,
            attempts=task.attempts,
            delay_ms=delay,
            error=error,
        )
        return "rescheduled"

    # ------------------------------------------------------------------
    # background loop
    # ------------------------------------------------------------------

    def start(self) -> bool:
        if self._started:
            return True
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="actionflow-verifier", daemon=True)
        self._t.start()
        self._started = True
        inc_counter("verifier_start_total", 1)
        return True

    def stop(self) -> None:
        self._stop.set()
        t = self._t
        if t is not None:
            t.join(timeout=2.0)
        self._t = None
        self._started = False
        inc_counter("verifier_stop_total", 1)

    def _mark_error(self, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"{type(err).__name__}:{err}"
        inc_counter("verifier_errors_total", 1)
        set_gauge("verifier_consecutive_failures", self._consecutive_failures)
        log.exception("verifier loop error failures=%s", self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("verifier_consecutive_failures", 0)

    def _error_backoff_s(self) -> float:
        n = max(1, int(self._consecutive_failures))
        ms = min(self.error_backoff_max_ms, self.error_backoff_min_ms * (2 ** min(10, n - 1)))
        return float(ms) / 1000.0

    def _run(self) -> None:
        interval_s = float(self.poll_ms) / 1000.0
        while not self._stop.is_set():
            inc_counter("verifier_ticks_total", 1)
            started = time.monotonic()
            try:
                self.run_once()
                self._clear_error()
            except Exception as err:
                self._mark_error(err)
                self._stop.wait(self._error_backoff_s())
                continue
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, interval_s - elapsed))


def verifier_from_context(ctx: "PipelineContext", checker: SettlementChecker) -> VerificationWorker:
    c = ctx.cfg
    return VerificationWorker(
        orchestrator=ctx.orchestrator,
        scheduler=ctx.scheduler,
        checker=checker,
        retry_ms=c.verification_retry_ms,
        poll_ms=c.verifier_poll_ms,
        batch_size=c.verifier_batch_size,
    )
