"""Action payload schemas.

Shape checks only (types, required keys, positivity). Strategies still own
the semantics: duplicate detection, caps, floors.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from actionflow.runtime.action_types import ActionRequest
from actionflow.runtime.errors import ValidationError

Json = Dict[str, Any]

PRIORITIES = ("normal", "high", "milestone", "experimental")

_HASHTAG = re.compile(r"#(\w+)")
_HASHTAG_WITH_SPACE = re.compile(r"#\w+\s*")


@dataclass(frozen=True)
class ParsedCommitMessage:
    tags: List[str]
    priority: str
    clean_message: str


def parse_commit_message(message: str) -> ParsedCommitMessage:
    """Split hashtags out of a commit message and derive its priority.

    The last priority-bearing tag wins: #milestone, #high/#priority,
    #experimental/#exp.
    """
    tags: List[str] = []
    priority = "normal"
    for raw in _HASHTAG.findall(message or ""):
        tag = raw.lower()
        tags.append(tag)
        if tag == "milestone":
            priority = "milestone"
        elif tag in {"high", "priority"}:
            priority = "high"
        elif tag in {"experimental", "exp"}:
            priority = "experimental"

    clean = _HASHTAG_WITH_SPACE.sub("", message or "").strip()
    return ParsedCommitMessage(tags=tags, priority=priority, clean_message=clean)


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


class _ObjectOnlyModel(BaseModel):
    """Payload must be an object; extra keys ride along for broadcasts."""

    model_config = ConfigDict(extra="allow")


class ActionRequestModel(_StrictModel):
    kind: str = Field(..., min_length=1)
    actor_key: str = Field(..., min_length=1, description="Wallet/account identifier")
    payload: Dict[str, Any] = Field(default_factory=dict)
    external_ref: Optional[str] = Field(default=None, description="Settlement reference, e.g. tx hash")

    @field_validator("kind")
    @classmethod
    def _norm_kind(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("actor_key")
    @classmethod
    def _norm_actor(cls, v: str) -> str:
        s = v.strip()
        if not s:
            raise ValueError("actor_key must not be blank")
        return s

    @field_validator("external_ref")
    @classmethod
    def _norm_ref(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        s = v.strip()
        return s or None


class StakingPayload(_ObjectOnlyModel):
    amount: int = Field(..., gt=0, description="Smallest token unit")


class CommitPayload(_ObjectOnlyModel):
    commit_hash: str = Field(..., min_length=1)
    repository: Optional[str] = None
    commit_message: Optional[str] = None
    github_username: Optional[str] = None
    commit_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    priority: str = "normal"

    @field_validator("commit_hash")
    @classmethod
    def _norm_hash(cls, v: str) -> str:
        s = v.strip()
        if not s:
            raise ValueError("commit_hash must not be blank")
        return s

    @field_validator("tags")
    @classmethod
    def _norm_tags(cls, v: List[str]) -> List[str]:
        return [str(t).strip().lower() for t in v if str(t).strip()]

    @field_validator("priority")
    @classmethod
    def _check_priority(cls, v: str) -> str:
        p = v.strip().lower()
        if p not in PRIORITIES:
            raise ValueError(f"priority must be one of {PRIORITIES}")
        return p

    @model_validator(mode="after")
    def _tags_from_message(self) -> "CommitPayload":
        # A bare pushed commit carries its tags as hashtags in the message.
        if self.commit_message is None or self.model_fields_set & {"tags", "priority"}:
            return self
        parsed = parse_commit_message(self.commit_message)
        self.tags = parsed.tags
        self.priority = parsed.priority
        self.commit_message = parsed.clean_message
        return self


def _errors(ve: PydanticValidationError) -> List[Json]:
    return [{"loc": list(e.get("loc", ())), "msg": str(e.get("msg", ""))} for e in ve.errors()]


def validate_payload(schema: Type[BaseModel], payload: Any, *, kind: str) -> BaseModel:
    """Validate `payload` against `schema` or raise ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError("invalid_payload", "payload_must_be_object", {"kind": kind})
    try:
        return schema(**payload)
    except PydanticValidationError as ve:
        raise ValidationError("invalid_payload", "payload_schema_mismatch", {"kind": kind, "errors": _errors(ve)})


def parse_action_request(j: Any) -> ActionRequest:
    if not isinstance(j, dict):
        raise ValidationError("invalid_request", "request_must_be_object", None)
    try:
        m = ActionRequestModel(**j)
    except PydanticValidationError as ve:
        raise ValidationError("invalid_request", "request_schema_mismatch", {"errors": _errors(ve)})
    return ActionRequest(kind=m.kind, actor_key=m.actor_key, payload=dict(m.payload), external_ref=m.external_ref)
