"""
Domain models for deferq — backed by Pydantic v2.

Pydantic handles:
  - JSON serialization / deserialization of MutationJob (via codec.py)
  - datetime parsing (ISO-8601 with timezone)
  - enum coercion for kind / role / reason fields
  - field validation of work drafts and partial updates

All models are frozen (immutable). A serialized job is never rewritten: a
retried job is the same bytes pushed back onto the source queue.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)


def _now() -> datetime:
    return datetime.now(UTC)


class MutationKind(str, Enum):
    """Operations that are applied asynchronously by the worker."""

    DELETE = "delete"
    UPDATE = "update"


class ActorRole(str, Enum):
    """Privilege tiers of the admin portal."""

    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class JobState(str, Enum):
    """Lifecycle states of a job, as encoded by which list holds it."""

    PENDING = "pending"
    CLAIMED = "claimed"
    APPLIED = "applied"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class JobOutcome(str, Enum):
    """Terminal result of a single worker iteration."""

    APPLIED = "applied"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class DeadLetterReason(str, Enum):
    MALFORMED = "malformed"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    RETRIES_EXHAUSTED = "retries_exhausted"
    APPLY_FAILED = "apply_failed"


class Actor(BaseModel):
    """An authenticated requester."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    role: ActorRole

    @property
    def is_superadmin(self) -> bool:
        return self.role == ActorRole.SUPERADMIN

    def owner_scope(self) -> str | None:
        """Owner filter for durable-store calls: None means unscoped."""
        return None if self.is_superadmin else self.id

    def can_mutate(self, owner_id: str) -> bool:
        return self.is_superadmin or owner_id == self.id


class MutationJob(BaseModel):
    """
    A deferred delete or update of a single work record.

    id          — stable identifier, assigned at admission time
    kind        — delete or update
    entity_id   — target work record
    actor_id    — requester identity, re-checked by the worker
    actor_role  — requester privilege tier, re-checked by the worker
    payload     — partial field-set for update; empty for delete
    created_at  — UTC timestamp set at admission time
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: MutationKind
    entity_id: str = Field(min_length=1)
    actor_id: str = Field(min_length=1)
    actor_role: ActorRole
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _check_payload(self) -> "MutationJob":
        match self.kind:
            case MutationKind.DELETE if self.payload:
                raise ValueError("delete jobs must not carry a payload")
            case MutationKind.UPDATE if not self.payload:
                raise ValueError("update jobs require a non-empty payload")
        return self

    @classmethod
    def delete(cls, actor: Actor, entity_id: str) -> "MutationJob":
        """Factory — a delete job for `entity_id` on behalf of `actor`."""
        return cls(
            kind=MutationKind.DELETE,
            entity_id=entity_id,
            actor_id=actor.id,
            actor_role=actor.role,
        )

    @classmethod
    def update(
        cls, actor: Actor, entity_id: str, fields: dict[str, Any]
    ) -> "MutationJob":
        """Factory — an update job carrying a partial field-set."""
        return cls(
            kind=MutationKind.UPDATE,
            entity_id=entity_id,
            actor_id=actor.id,
            actor_role=actor.role,
            payload=fields,
        )

    @property
    def actor(self) -> Actor:
        return Actor(id=self.actor_id, role=self.actor_role)


class Accepted(BaseModel):
    """Receipt returned by the admission point: accepted, not completed."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    entity_id: str
    kind: MutationKind
    status: str = "accepted"


class DeadLetter(BaseModel):
    """
    Envelope stored on the dead-letter list.

    raw keeps the original job bytes verbatim so the job can be inspected or
    requeued unchanged, even when it never decoded.
    """

    model_config = ConfigDict(frozen=True)

    raw: str
    reason: DeadLetterReason
    error: str
    attempts: int = 0
    failed_at: datetime = Field(default_factory=_now)


class LockLease(BaseModel):
    """
    An exclusive, time-bounded claim on a resource key.

    validity is the number of seconds the lease is guaranteed exclusive,
    measured from the end of acquisition (ttl minus elapsed minus drift).
    """

    model_config = ConfigDict(frozen=True)

    resource: str
    token: str
    validity: float


# ---------------------------------------------------------------------- #
# Work records                                                           #
# ---------------------------------------------------------------------- #

MUTABLE_FIELDS: frozenset[str] = frozenset({"prompt", "image_url", "category_id"})


def _not_blank(v: str) -> str:
    if not v.strip():
        raise ValueError("must not be blank")
    return v


class Work(BaseModel):
    """A user-submitted work record as held by the durable store."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    prompt: str
    image_url: str
    category_id: str
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def with_fields(self, fields: dict[str, Any]) -> "Work":
        """Return a new Work with mutable fields replaced."""
        update = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}
        return self.model_copy(update={**update, "updated_at": _now()})


class WorkDraft(BaseModel):
    """Input for creating a work record; every field is required."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    image_url: str
    category_id: str

    @field_validator("prompt", "image_url", "category_id")
    @classmethod
    def _required(cls, v: str) -> str:
        return _not_blank(v)


_url_adapter: TypeAdapter[HttpUrl] = TypeAdapter(HttpUrl)


def _validate_field(name: str, value: Any) -> Any:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    if name == "image_url":
        _url_adapter.validate_python(value)
        return value
    return _not_blank(value)


def filter_update(fields: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
    """
    Split a partial field-set into (accepted, rejected).

    Unknown names and invalid values land in `rejected` with a short reason;
    they are dropped, never fatal.
    """
    accepted: dict[str, Any] = {}
    rejected: dict[str, str] = {}
    for name, value in fields.items():
        if name not in MUTABLE_FIELDS:
            rejected[name] = "unknown field"
            continue
        try:
            accepted[name] = _validate_field(name, value)
        except (ValueError, ValidationError) as exc:
            rejected[name] = str(exc).splitlines()[0]
    return accepted, rejected
