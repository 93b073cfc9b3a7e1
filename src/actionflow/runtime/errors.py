from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class ActionError(Exception):
    """Canonical error type for the action pipeline."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


@dataclass
class ValidationError(ActionError):
    """Rejected before anything was persisted."""

    code: str = "invalid"
    reason: str = "invalid_action"
    details: Any | None = None


@dataclass
class UnknownActionKind(ValidationError):
    code: str = "unknown_action_kind"
    reason: str = "no_strategy_registered"
    details: Any | None = None

    @staticmethod
    def for_kind(kind: str, known: list[str]) -> "UnknownActionKind":
        return UnknownActionKind(details={"kind": kind, "known": sorted(known)})


@dataclass
class DuplicateAction(ValidationError):
    code: str = "duplicate_action"
    reason: str = "already_processed"
    details: Any | None = None


@dataclass
class RollbackUnsupported(ValidationError):
    code: str = "rollback_unsupported"
    reason: str = "kind_has_no_compensation"
    details: Any | None = None


@dataclass
class InvalidTransition(ValidationError):
    code: str = "invalid_transition"
    reason: str = "action_not_pending"
    details: Any | None = None


@dataclass
class TransactionError(ActionError):
    code: str = "transaction_error"
    reason: str = "storage_failure"
    details: Any | None = None


@dataclass
class ActionNotFound(ActionError):
    code: str = "action_not_found"
    reason: str = "unknown_action_id"
    details: Any | None = None


@dataclass
class ActionProcessingFailed(ActionError):
    """Raised by process() for any failure before commit.

    `cause` is the underlying error; nothing was persisted.
    """

    code: str = "action_processing_failed"
    reason: str = ""
    details: Any | None = None
    kind: str = ""
    cause: Optional[BaseException] = field(default=None, repr=False)

    @staticmethod
    def wrap(kind: str, cause: BaseException) -> "ActionProcessingFailed":
        reason = getattr(cause, "code", None) or type(cause).__name__
        return ActionProcessingFailed(
            reason=str(reason),
            details={"kind": kind, "error": str(cause)},
            kind=kind,
            cause=cause,
        )


@dataclass
class CompensationFailed(ActionError):
    """Rollback could not reverse an optimistic mutation.

    Fatal: the position may hold state that was never settled. No automatic
    retry; an operator has to reconcile.
    """

    code: str = "compensation_failed"
    reason: str = ""
    details: Any | None = None


@dataclass
class BroadcastError(ActionError):
    code: str = "broadcast_error"
    reason: str = "delivery_failed"
    details: Any | None = None
