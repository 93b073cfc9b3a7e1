from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from actionflow.runtime.action_types import Action, BroadcastMessage
from actionflow.runtime.errors import ValidationError

Json = Dict[str, Any]


@dataclass(frozen=True)
class TxScope:
    """One unit of work: an open write transaction plus its pinned clock.

    Every read and write a strategy makes goes through `con`; the orchestrator
    commits or rolls back around it.
    """

    con: sqlite3.Connection
    now_ms: int


def row_to_json(row: Optional[sqlite3.Row]) -> Optional[Json]:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


def user_room(actor_key: str) -> str:
    return f"user:{actor_key}"


class ActionStrategy(ABC):
    """Apply/compensate contract for one action kind.

    Subclasses set `kind` and the settlement-reference policy:
      - requires_external_ref: the action settles externally and will be verified
      - forbids_external_ref: the action is final at submission and is never verified
      - supports_rollback: False means compensate() is not implemented and the
        orchestrator refuses rollback() for this kind up front
    """

    kind: str = ""
    requires_external_ref: bool = False
    forbids_external_ref: bool = False
    supports_rollback: bool = True

    def check_request(self, action: Action) -> None:
        if self.requires_external_ref and not action.external_ref:
            raise ValidationError("invalid_request", "external_ref_required", {"kind": action.kind})
        if self.forbids_external_ref and action.external_ref:
            raise ValidationError(
                "invalid_request",
                "external_ref_not_allowed",
                {"kind": action.kind, "external_ref": action.external_ref},
            )

    @abstractmethod
    def apply(self, scope: TxScope, action: Action) -> Json:
        """Mutate domain state optimistically and return the domain result."""

    @abstractmethod
    def prepare_broadcast(self, scope: TxScope, action: Action, result: Json) -> Optional[BroadcastMessage]:
        """Build the post-commit notification for a successful apply."""

    @abstractmethod
    def compensate(self, scope: TxScope, action: Action) -> None:
        """Reverse exactly what apply() did for `action`."""

    @abstractmethod
    def prepare_rollback_broadcast(self, scope: TxScope, action: Action) -> Optional[BroadcastMessage]:
        """Build the post-commit notification for a rollback."""
