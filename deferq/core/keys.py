"""
Key layout in the fast store.

Queue keys live under a configurable prefix; cache and lock keys keep the
names the portal has always used so existing entries stay addressable.

  {prefix}:mutations[:{p}]             source queue (per partition)
  {prefix}:mutations[:{p}]:processing  claimed, in-flight jobs
  {prefix}:mutations:dead              dead-letter list
  {prefix}:attempts:{job_id}           attempt counter
  {prefix}:applied:{job_id}            delete-applied marker
  {prefix}:claim:{sha256(raw)}         worker heartbeat for a claimed entry
  work:{entity_id}                     cached work snapshot
  admin:{owner_id}:works               listing namespace (generation-keyed)
  upload-lock:{actor_id}               create/upload lease
"""

from __future__ import annotations

import dataclasses
import hashlib
import zlib


@dataclasses.dataclass(frozen=True)
class QueueLayout:
    """
    Names of the queue lists and per-job bookkeeping keys.

    Parameters
    ----------
    prefix     : namespace for every queue key
    partitions : number of source queues; jobs are routed by entity id so that
                 one worker per partition preserves per-entity order
    """

    prefix: str = "deferq"
    partitions: int = 1

    def __post_init__(self) -> None:
        if self.partitions < 1:
            raise ValueError("partitions must be >= 1")

    def partition_for(self, entity_id: str) -> int:
        """Stable partition index for an entity (crc32, not Python's hash())."""
        if self.partitions == 1:
            return 0
        return zlib.crc32(entity_id.encode("utf-8")) % self.partitions

    def source(self, partition: int = 0) -> str:
        self._check(partition)
        base = f"{self.prefix}:mutations"
        return base if self.partitions == 1 else f"{base}:{partition}"

    def processing(self, partition: int = 0) -> str:
        return f"{self.source(partition)}:processing"

    @property
    def dead(self) -> str:
        return f"{self.prefix}:mutations:dead"

    def attempts(self, job_id: str) -> str:
        return f"{self.prefix}:attempts:{job_id}"

    def applied(self, job_id: str) -> str:
        return f"{self.prefix}:applied:{job_id}"

    def claim(self, raw: str) -> str:
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
        return f"{self.prefix}:claim:{digest}"

    def _check(self, partition: int) -> None:
        if not 0 <= partition < self.partitions:
            raise ValueError(
                f"partition {partition} out of range for {self.partitions} partitions"
            )


def work_key(entity_id: str) -> str:
    return f"work:{entity_id}"


def listing_namespace(owner_id: str) -> str:
    return f"admin:{owner_id}:works"


def upload_lock(actor_id: str) -> str:
    return f"upload-lock:{actor_id}"
