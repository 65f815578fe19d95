"""
Codec — serialize and deserialize queue entries using Pydantic v2.

Wire format of a job (produced by model_dump_json):
---------------------------------------------------
{
  "id": "550e8400-...",
  "kind": "update",
  "entity_id": "66f1c0...",
  "actor_id": "66a0b1...",
  "actor_role": "admin",
  "payload": {"prompt": "a red fox"},
  "created_at": "2024-01-01T00:00:00Z"
}

Dead-letter entries wrap the original job text verbatim in `raw`.
"""

from __future__ import annotations

from pydantic import ValidationError

from deferq.domain.errors import MalformedJobError
from deferq.domain.models import DeadLetter, MutationJob


def encode(job: MutationJob) -> str:
    """Serialize a MutationJob to compact JSON text."""
    return job.model_dump_json()


def decode(data: str | bytes) -> MutationJob:
    """Deserialize JSON text to a MutationJob. Raises MalformedJobError."""
    if not data:
        raise MalformedJobError("empty job payload")
    try:
        return MutationJob.model_validate_json(data)
    except ValidationError as exc:
        raise MalformedJobError(
            f"invalid job payload ({exc.error_count()} errors)"
        ) from exc


def encode_dead_letter(letter: DeadLetter) -> str:
    return letter.model_dump_json()


def decode_dead_letter(data: str | bytes) -> DeadLetter:
    return DeadLetter.model_validate_json(data)
