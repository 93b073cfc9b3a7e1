from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from actionflow.runtime.sqlite_db import _load_json

Json = Dict[str, Any]


class ActionStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    TERMINAL = frozenset({CONFIRMED, FAILED})


@dataclass(frozen=True)
class ActionRequest:
    """What a caller submits. `id` is assigned by the orchestrator."""

    kind: str
    actor_key: str
    payload: Json
    external_ref: Optional[str] = None

    @staticmethod
    def from_json(j: Any) -> "ActionRequest":
        # Imported lazily: schemas pulls in pydantic, which low-level
        # storage helpers importing this module do not need.
        from actionflow.runtime.schemas import parse_action_request

        if isinstance(j, ActionRequest):
            return j
        return parse_action_request(j)


@dataclass(frozen=True)
class Action:
    """A request bound to its ledger id; this is what strategies receive."""

    id: str
    kind: str
    actor_key: str
    payload: Json
    external_ref: Optional[str] = None

    @staticmethod
    def bind(action_id: str, req: ActionRequest) -> "Action":
        return Action(
            id=action_id,
            kind=req.kind,
            actor_key=req.actor_key,
            payload=dict(req.payload),
            external_ref=req.external_ref,
        )


@dataclass(frozen=True)
class ActionRecord:
    id: str
    actor_key: str
    kind: str
    payload: Json
    external_ref: Optional[str]
    status: str
    optimistic_applied: bool
    verification_result: Optional[Json]
    created_ms: int
    confirmed_ms: Optional[int] = None
    failed_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ActionStatus.TERMINAL

    def as_action(self) -> Action:
        return Action(
            id=self.id,
            kind=self.kind,
            actor_key=self.actor_key,
            payload=dict(self.payload),
            external_ref=self.external_ref,
        )

    @staticmethod
    def from_row(row: sqlite3.Row) -> "ActionRecord":
        return ActionRecord(
            id=str(row["id"]),
            actor_key=str(row["actor_key"]),
            kind=str(row["kind"]),
            payload=_load_json(row["payload_json"], {}),
            external_ref=None if row["external_ref"] is None else str(row["external_ref"]),
            status=str(row["status"]),
            optimistic_applied=bool(row["optimistic_applied"]),
            verification_result=_load_json(row["verification_json"], None),
            created_ms=int(row["created_ms"]),
            confirmed_ms=None if row["confirmed_ms"] is None else int(row["confirmed_ms"]),
            failed_ms=None if row["failed_ms"] is None else int(row["failed_ms"]),
        )


@dataclass(frozen=True)
class BroadcastMessage:
    """One-way notification: `{type, rooms, data, actionId}`."""

    type: str
    rooms: List[str]
    data: Json
    action_id: Optional[str] = None

    def to_json(self) -> Json:
        return {
            "type": self.type,
            "rooms": list(self.rooms),
            "data": self.data,
            "actionId": self.action_id,
        }


@dataclass(frozen=True)
class ProcessResult:
    id: str
    kind: str
    domain_result: Json
    verification_scheduled: bool = False
    broadcast: Optional[BroadcastMessage] = field(default=None, repr=False)


@dataclass(frozen=True)
class VerificationTask:
    id: int
    action_id: str
    kind: str
    scheduled_for_ms: int
    status: str
    attempts: int
    max_attempts: int
    last_attempt_ms: Optional[int]
    error_message: Optional[str]
    created_ms: int

    @staticmethod
    def from_row(row: sqlite3.Row) -> "VerificationTask":
        return VerificationTask(
            id=int(row["id"]),
            action_id=str(row["action_id"]),
            kind=str(row["kind"]),
            scheduled_for_ms=int(row["scheduled_for_ms"]),
            status=str(row["status"]),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            last_attempt_ms=None if row["last_attempt_ms"] is None else int(row["last_attempt_ms"]),
            error_message=None if row["error_message"] is None else str(row["error_message"]),
            created_ms=int(row["created_ms"]),
        )
