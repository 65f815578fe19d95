"""
MutationWorker — drain the source queue and apply jobs to the durable store.

Job state machine
-----------------
  PENDING (source queue)
     │  claim: atomic BLMOVE source → processing
     ▼
  CLAIMED (processing list, heartbeat alive)
     ├─ applied ───────────────────────────────> APPLIED        (LREM processing)
     ├─ store unavailable, attempts < max ─────> RETRIED        (move → source)
     └─ malformed / unauthorized / not found /
        unexpected apply error /
        store unavailable at max / over max ───> DEAD_LETTERED  (move → dead)

Logical failures are never retried: a retry cannot change their outcome.
An unexpected error while applying is dead-lettered as APPLY_FAILED rather
than allowed to end the worker loop.
Transient failures are retried up to `max_attempts` (counted in the fast
store, since a job's bytes are never rewritten) with `retry_backoff` seconds
between iterations. The count is checked before applying as well, so a job
that keeps coming back through the reaper after crashed claims is
dead-lettered once it is past the cap.

Idempotency
-----------
Delivery is at-least-once (see reaper.py), so application tolerates repeats:
  - re-applying an update writes the same fields again;
  - before deleting, the worker records an "applied" marker for the job id.
    A redelivered delete that finds the entity already gone and the marker
    present is a success; a delete of an entity that never existed (no
    marker) is dead-lettered as not found.

Authorization is re-derived from actor_id / actor_role against the current
owner of the record: admins only mutate their own work, superadmins any.
"""

from __future__ import annotations

import asyncio
import dataclasses

import structlog

from deferq.core import codec
from deferq.core.cache import ReadThroughCache
from deferq.core.heartbeat import HeartbeatManager
from deferq.core.keys import QueueLayout, listing_namespace, work_key
from deferq.domain.errors import (
    AuthorizationError,
    EntityNotFoundError,
    MalformedJobError,
    StoreUnavailableError,
)
from deferq.domain.models import (
    DeadLetter,
    DeadLetterReason,
    JobOutcome,
    MutationJob,
    MutationKind,
    filter_update,
)
from deferq.ports.durable_store import DurableStorePort
from deferq.ports.fast_store import FastStorePort

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS: int = 5
DEFAULT_RETRY_BACKOFF: float = 1.0
DEFAULT_MARKER_TTL: float = 24 * 60 * 60


@dataclasses.dataclass
class MutationWorker:
    """
    Parameters
    ----------
    store              : fast store holding the queues
    durable            : authoritative work store
    cache              : cache invalidated after a job is applied
    layout             : queue key layout
    partition          : source queue this worker drains
    max_attempts       : claims of one job allowed before dead-lettering
    retry_backoff      : seconds to pause after a retry or store outage
    claim_timeout      : seconds run() blocks per claim before re-checking stop
    heartbeat_ttl      : lifetime of a claim heartbeat
    heartbeat_interval : refresh period of a claim heartbeat
    marker_ttl         : lifetime of attempt counters and applied markers
    """

    store: FastStorePort
    durable: DurableStorePort
    cache: ReadThroughCache
    layout: QueueLayout = dataclasses.field(default_factory=QueueLayout)
    partition: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    claim_timeout: float = 5.0
    heartbeat_ttl: float = 30.0
    heartbeat_interval: float = 10.0
    marker_ttl: float = DEFAULT_MARKER_TTL

    _stopped: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def source(self) -> str:
        return self.layout.source(self.partition)

    @property
    def processing(self) -> str:
        return self.layout.processing(self.partition)

    # ------------------------------------------------------------------ #
    # Loop                                                                 #
    # ------------------------------------------------------------------ #

    async def run(self) -> None:
        """Process jobs until stop() is called."""
        self._stopped.clear()
        logger.info("worker_started", queue=self.source, max_attempts=self.max_attempts)
        while not self._stopped.is_set():
            try:
                outcome = await self.process_one(timeout=self.claim_timeout)
            except StoreUnavailableError as exc:
                logger.error("worker_store_unavailable", queue=self.source, error=str(exc))
                await self._pause(self.retry_backoff)
                continue
            if outcome is JobOutcome.RETRIED:
                await self._pause(self.retry_backoff)
        logger.info("worker_stopped", queue=self.source)

    def stop(self) -> None:
        self._stopped.set()

    async def drain(self) -> list[JobOutcome]:
        """Process until the source queue is empty. Does not back off."""
        outcomes: list[JobOutcome] = []
        while await self.store.length(self.source):
            outcome = await self.process_one(timeout=self.claim_timeout)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    async def process_one(self, timeout: float | None = None) -> JobOutcome | None:
        """
        Claim and handle a single job.

        Blocks until a job arrives (indefinitely when `timeout` is None).
        Returns None if the claim timed out.
        """
        raw = await self.store.claim(self.source, self.processing, timeout)
        if raw is None:
            return None
        async with HeartbeatManager(
            self.store,
            self.layout.claim(raw),
            ttl=self.heartbeat_ttl,
            interval=self.heartbeat_interval,
        ):
            return await self._handle(raw)

    # ------------------------------------------------------------------ #
    # One job                                                              #
    # ------------------------------------------------------------------ #

    async def _handle(self, raw: str) -> JobOutcome:
        try:
            job = codec.decode(raw)
        except MalformedJobError as exc:
            return await self._dead_letter(
                raw, None, DeadLetterReason.MALFORMED, str(exc), 0
            )

        log = logger.bind(job_id=job.id, entity_id=job.entity_id, kind=job.kind.value)
        attempts = await self.store.incr(self.layout.attempts(job.id), self.marker_ttl)
        if attempts > self.max_attempts:
            # Only reachable when earlier claims died without recording an outcome.
            return await self._dead_letter(
                raw,
                job,
                DeadLetterReason.RETRIES_EXHAUSTED,
                f"claimed {attempts} times without completing",
                attempts,
            )

        try:
            owner_id = await self._apply(job)
        except EntityNotFoundError as exc:
            return await self._dead_letter(
                raw, job, DeadLetterReason.NOT_FOUND, str(exc), attempts
            )
        except AuthorizationError as exc:
            return await self._dead_letter(
                raw, job, DeadLetterReason.UNAUTHORIZED, str(exc), attempts
            )
        except StoreUnavailableError as exc:
            if attempts >= self.max_attempts:
                return await self._dead_letter(
                    raw, job, DeadLetterReason.RETRIES_EXHAUSTED, str(exc), attempts
                )
            await self.store.move(self.processing, self.source, raw)
            log.warning(
                "job_retried",
                attempt=attempts,
                max_attempts=self.max_attempts,
                error=str(exc),
            )
            return JobOutcome.RETRIED
        except Exception as exc:
            log.exception("job_apply_failed", attempt=attempts)
            return await self._dead_letter(
                raw,
                job,
                DeadLetterReason.APPLY_FAILED,
                f"{type(exc).__name__}: {exc}",
                attempts,
            )

        await self.store.remove(self.processing, raw)
        await self.store.delete(self.layout.attempts(job.id))
        await self._invalidate(job, owner_id)
        log.info("job_applied", attempt=attempts)
        return JobOutcome.APPLIED

    async def _apply(self, job: MutationJob) -> str | None:
        """
        Apply a job to the durable store.

        Returns the owner of the mutated record, or None when a redelivered
        delete found nothing left to do.
        """
        actor = job.actor
        work = await self.durable.get(job.entity_id)
        if work is None:
            if job.kind is MutationKind.DELETE and await self._already_applied(job):
                logger.info("delete_already_applied", job_id=job.id, entity_id=job.entity_id)
                return None
            raise EntityNotFoundError(job.entity_id)
        if not actor.can_mutate(work.owner_id):
            raise AuthorizationError(actor.id, job.entity_id)

        scope = actor.owner_scope()
        match job.kind:
            case MutationKind.DELETE:
                await self.store.set_if_absent(
                    self.layout.applied(job.id), "1", self.marker_ttl
                )
                if not await self.durable.delete(job.entity_id, owner_id=scope):
                    logger.info("delete_raced", job_id=job.id, entity_id=job.entity_id)
            case MutationKind.UPDATE:
                fields, rejected = filter_update(job.payload)
                if rejected:
                    logger.warning("update_fields_dropped", job_id=job.id, fields=rejected)
                if not fields:
                    logger.info("update_noop", job_id=job.id, entity_id=job.entity_id)
                    return work.owner_id
                if await self.durable.update(job.entity_id, fields, owner_id=scope) is None:
                    raise EntityNotFoundError(job.entity_id)
        return work.owner_id

    async def _already_applied(self, job: MutationJob) -> bool:
        return await self.store.get(self.layout.applied(job.id)) is not None

    async def _dead_letter(
        self,
        raw: str,
        job: MutationJob | None,
        reason: DeadLetterReason,
        error: str,
        attempts: int,
    ) -> JobOutcome:
        letter = DeadLetter(raw=raw, reason=reason, error=error, attempts=attempts)
        moved = await self.store.move(
            self.processing,
            self.layout.dead,
            raw,
            replacement=codec.encode_dead_letter(letter),
        )
        if job is not None:
            await self.store.delete(self.layout.attempts(job.id))
        logger.error(
            "job_dead_lettered",
            job_id=job.id if job else None,
            entity_id=job.entity_id if job else None,
            reason=reason.value,
            error=error,
            attempts=attempts,
            moved=moved,
        )
        return JobOutcome.DEAD_LETTERED

    async def _invalidate(self, job: MutationJob, owner_id: str | None) -> None:
        owners = {job.actor_id} if owner_id is None else {job.actor_id, owner_id}
        try:
            await self.cache.invalidate(
                work_key(job.entity_id),
                namespaces=[listing_namespace(owner) for owner in sorted(owners)],
            )
        except StoreUnavailableError as exc:
            logger.warning(
                "cache_invalidation_failed", job_id=job.id, error=str(exc)
            )

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except TimeoutError:
            pass
