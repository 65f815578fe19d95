import asyncio

import pytest

from deferq.adapters.durable.memory import InMemoryWorkStore
from deferq.adapters.fast_store.memory import InMemoryFastStore
from deferq.core import codec
from deferq.core.admission import MutationAdmission
from deferq.core.cache import ReadThroughCache
from deferq.core.keys import QueueLayout, listing_namespace, work_key
from deferq.core.reaper import Reaper
from deferq.core.worker import MutationWorker
from deferq.domain.models import (
    Actor,
    ActorRole,
    DeadLetterReason,
    JobOutcome,
    MutationJob,
    Work,
)

ADMIN_A = Actor(id="admin-a", role=ActorRole.ADMIN)
ADMIN_B = Actor(id="admin-b", role=ActorRole.ADMIN)
ROOT = Actor(id="root", role=ActorRole.SUPERADMIN)

LAYOUT = QueueLayout()

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast() -> InMemoryFastStore:
    return InMemoryFastStore()


@pytest.fixture
def durable() -> InMemoryWorkStore:
    store = InMemoryWorkStore()
    store.add(
        Work(
            id="w1",
            owner_id="admin-a",
            prompt="a fox",
            image_url="https://img.example/fox.png",
            category_id="cat-1",
        )
    )
    return store


@pytest.fixture
def cache(fast: InMemoryFastStore) -> ReadThroughCache:
    return ReadThroughCache(fast)


@pytest.fixture
def admission(fast: InMemoryFastStore, cache: ReadThroughCache) -> MutationAdmission:
    return MutationAdmission(fast, cache)


@pytest.fixture
def worker(
    fast: InMemoryFastStore, durable: InMemoryWorkStore, cache: ReadThroughCache
) -> MutationWorker:
    return MutationWorker(
        fast,
        durable,
        cache,
        max_attempts=3,
        retry_backoff=0.01,
        claim_timeout=0.02,
    )


async def _dead_letters(fast: InMemoryFastStore):
    return [codec.decode_dead_letter(raw) for raw in await fast.range(LAYOUT.dead)]


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------


async def test_empty_queue_times_out(worker: MutationWorker):
    assert await worker.process_one(timeout=0.01) is None


async def test_delete_is_applied_and_acked(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    receipt = await admission.submit_delete(ADMIN_A, "w1")

    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED

    assert await durable.get("w1") is None
    assert await fast.length(LAYOUT.source()) == 0
    assert await fast.length(LAYOUT.processing()) == 0
    assert await fast.get(LAYOUT.attempts(receipt.job_id)) is None


async def test_update_is_applied(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "a wolf"})
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    assert (await durable.get("w1")).prompt == "a wolf"


async def test_superadmin_may_mutate_any_work(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    await admission.submit_delete(ROOT, "w1")
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    assert await durable.get("w1") is None


async def test_jobs_are_applied_in_admission_order(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "first"})
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "second"})
    assert await worker.drain() == [JobOutcome.APPLIED, JobOutcome.APPLIED]
    assert (await durable.get("w1")).prompt == "second"


async def test_unknown_and_invalid_fields_are_dropped(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    await admission.submit_update(
        ADMIN_A, "w1", {"prompt": "kept", "owner_id": "admin-b", "image_url": "nope"}
    )
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    work = await durable.get("w1")
    assert work.prompt == "kept"
    assert work.owner_id == "admin-a"
    assert work.image_url == "https://img.example/fox.png"


async def test_update_with_only_invalid_fields_is_a_noop(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    await admission.submit_update(ADMIN_A, "w1", {"image_url": "not a url"})
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    assert "update" not in durable.calls


async def test_cache_is_invalidated_after_apply(
    worker: MutationWorker,
    admission: MutationAdmission,
    cache: ReadThroughCache,
):
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "a wolf"})
    # A reader refills the cache with the pre-mutation snapshot.
    await cache.add(work_key("w1"), {"prompt": "a fox"})
    gen = await cache.generation(listing_namespace("admin-a"))

    await worker.process_one(timeout=0.1)

    assert await cache.get(work_key("w1")) is None
    assert await cache.generation(listing_namespace("admin-a")) != gen


async def test_superadmin_mutation_invalidates_owner_listing(
    worker: MutationWorker, admission: MutationAdmission, cache: ReadThroughCache
):
    gen = await cache.generation(listing_namespace("admin-a"))
    await admission.submit_update(ROOT, "w1", {"prompt": "edited"})
    await worker.process_one(timeout=0.1)
    assert await cache.generation(listing_namespace("admin-a")) != gen


async def test_heartbeat_is_alive_while_applying(
    fast: InMemoryFastStore,
    durable: InMemoryWorkStore,
    cache: ReadThroughCache,
    admission: MutationAdmission,
):
    seen: list[str | None] = []

    class _Observing(InMemoryWorkStore):
        async def get(self, entity_id: str):
            seen.append(await fast.get(LAYOUT.claim(raw)))
            return await durable.get(entity_id)

    await admission.submit_delete(ADMIN_A, "w1")
    [raw] = await fast.range(LAYOUT.source())
    worker = MutationWorker(fast, _Observing(), cache)

    await worker.process_one(timeout=0.1)

    assert seen == ["1"]
    assert await fast.get(LAYOUT.claim(raw)) is None


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


async def test_redelivered_update_is_harmless(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "a wolf"})
    [raw] = await fast.range(LAYOUT.source())
    await worker.process_one(timeout=0.1)

    await fast.push(LAYOUT.source(), raw)
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    assert (await durable.get("w1")).prompt == "a wolf"


async def test_redelivered_delete_is_success(
    worker: MutationWorker,
    admission: MutationAdmission,
    fast: InMemoryFastStore,
):
    await admission.submit_delete(ADMIN_A, "w1")
    [raw] = await fast.range(LAYOUT.source())
    await worker.process_one(timeout=0.1)

    await fast.push(LAYOUT.source(), raw)
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    assert await fast.length(LAYOUT.dead) == 0


# ---------------------------------------------------------------------------
# Dead-lettering
# ---------------------------------------------------------------------------


async def test_malformed_entry_is_dead_lettered(
    worker: MutationWorker, fast: InMemoryFastStore
):
    await fast.push(LAYOUT.source(), "{not json")

    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED

    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.MALFORMED
    assert letter.raw == "{not json"
    assert await fast.length(LAYOUT.processing()) == 0


async def test_delete_of_missing_work_is_dead_lettered(
    worker: MutationWorker, admission: MutationAdmission, fast: InMemoryFastStore
):
    await admission.submit_delete(ADMIN_A, "ghost")
    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.NOT_FOUND
    assert letter.attempts == 1


async def test_update_of_missing_work_is_dead_lettered(
    worker: MutationWorker, admission: MutationAdmission, fast: InMemoryFastStore
):
    await admission.submit_update(ADMIN_A, "ghost", {"prompt": "x"})
    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.NOT_FOUND


async def test_foreign_admin_is_dead_lettered(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    await admission.submit_delete(ADMIN_B, "w1")

    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED

    assert await durable.get("w1") is not None
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.UNAUTHORIZED
    assert codec.decode(letter.raw).actor_id == "admin-b"


async def test_dead_letter_keeps_original_bytes(
    worker: MutationWorker, admission: MutationAdmission, fast: InMemoryFastStore
):
    await admission.submit_delete(ADMIN_A, "ghost")
    [raw] = await fast.range(LAYOUT.source())
    await worker.process_one(timeout=0.1)
    [letter] = await _dead_letters(fast)
    assert letter.raw == raw


# ---------------------------------------------------------------------------
# Transient failures
# ---------------------------------------------------------------------------


async def test_durable_outage_requeues_job(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    receipt = await admission.submit_delete(ADMIN_A, "w1")
    [raw] = await fast.range(LAYOUT.source())
    durable.available = False

    assert await worker.process_one(timeout=0.1) is JobOutcome.RETRIED

    assert await fast.range(LAYOUT.source()) == [raw]
    assert await fast.length(LAYOUT.processing()) == 0
    assert await fast.get(LAYOUT.attempts(receipt.job_id)) == "1"


async def test_retry_succeeds_once_store_recovers(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    await admission.submit_delete(ADMIN_A, "w1")
    durable.available = False
    assert await worker.process_one(timeout=0.1) is JobOutcome.RETRIED

    durable.available = True
    assert await worker.process_one(timeout=0.1) is JobOutcome.APPLIED
    assert await durable.get("w1") is None


async def test_retries_are_bounded(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    receipt = await admission.submit_delete(ADMIN_A, "w1")
    durable.available = False

    outcomes = [await worker.process_one(timeout=0.1) for _ in range(3)]

    assert outcomes == [
        JobOutcome.RETRIED,
        JobOutcome.RETRIED,
        JobOutcome.DEAD_LETTERED,
    ]
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.RETRIES_EXHAUSTED
    assert letter.attempts == 3
    assert await fast.length(LAYOUT.source()) == 0
    assert await fast.get(LAYOUT.attempts(receipt.job_id)) is None


def test_max_attempts_must_be_positive(
    fast: InMemoryFastStore, durable: InMemoryWorkStore, cache: ReadThroughCache
):
    with pytest.raises(ValueError):
        MutationWorker(fast, durable, cache, max_attempts=0)


# ---------------------------------------------------------------------------
# Unexpected failures
# ---------------------------------------------------------------------------


class _WorkerKilled(BaseException):
    """Stands in for the worker process dying mid-apply."""


async def _raise_runtime_error(*args, **kwargs):
    raise RuntimeError("document failed validation")


async def test_unexpected_apply_error_is_dead_lettered(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
    monkeypatch: pytest.MonkeyPatch,
):
    receipt = await admission.submit_update(ADMIN_A, "w1", {"prompt": "a wolf"})
    monkeypatch.setattr(durable, "update", _raise_runtime_error)

    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED

    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.APPLY_FAILED
    assert "RuntimeError" in letter.error
    assert letter.attempts == 1
    assert await fast.length(LAYOUT.processing()) == 0
    assert await fast.get(LAYOUT.attempts(receipt.job_id)) is None


async def test_job_claimed_past_the_cap_is_dead_lettered_unapplied(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    receipt = await admission.submit_delete(ADMIN_A, "w1")
    # Three earlier claims died before recording any outcome.
    await fast.set(LAYOUT.attempts(receipt.job_id), "3", 60)

    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED

    assert await durable.get("w1") is not None
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.RETRIES_EXHAUSTED
    assert letter.attempts == 4


async def test_job_that_keeps_killing_its_worker_ends_in_dead_letters(
    fast: InMemoryFastStore,
    durable: InMemoryWorkStore,
    cache: ReadThroughCache,
    admission: MutationAdmission,
    monkeypatch: pytest.MonkeyPatch,
):
    async def _die(*args, **kwargs):
        raise _WorkerKilled

    monkeypatch.setattr(durable, "update", _die)
    worker = MutationWorker(fast, durable, cache, max_attempts=2, claim_timeout=0.02)
    reaper = Reaper(fast)
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "a wolf"})

    for _ in range(2):
        with pytest.raises(_WorkerKilled):
            await worker.process_one(timeout=0.1)
        await reaper.sweep()
        assert await reaper.sweep() == 1

    assert await worker.process_one(timeout=0.1) is JobOutcome.DEAD_LETTERED
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.RETRIES_EXHAUSTED
    assert letter.attempts == 3
    assert await fast.length(LAYOUT.source()) == 0
    assert await fast.length(LAYOUT.processing()) == 0


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


async def test_run_processes_until_stopped(
    worker: MutationWorker, admission: MutationAdmission, durable: InMemoryWorkStore
):
    task = asyncio.create_task(worker.run())
    await admission.submit_delete(ADMIN_A, "w1")

    for _ in range(100):
        if await durable.get("w1") is None:
            break
        await asyncio.sleep(0.01)

    worker.stop()
    await asyncio.wait_for(task, timeout=1)
    assert await durable.get("w1") is None


async def test_run_survives_fast_store_outage(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
):
    await admission.submit_delete(ADMIN_A, "w1")
    fast.available = False
    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.05)
    assert not task.done()

    fast.available = True
    for _ in range(100):
        if await durable.get("w1") is None:
            break
        await asyncio.sleep(0.01)

    worker.stop()
    await asyncio.wait_for(task, timeout=1)
    assert await durable.get("w1") is None


async def test_drain_handles_every_queued_job(
    worker: MutationWorker, admission: MutationAdmission, fast: InMemoryFastStore
):
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "x"})
    await admission.submit_delete(ADMIN_A, "ghost")
    await admission.submit_delete(ADMIN_A, "w1")

    outcomes = await worker.drain()

    assert outcomes == [
        JobOutcome.APPLIED,
        JobOutcome.DEAD_LETTERED,
        JobOutcome.APPLIED,
    ]
    assert await fast.length(LAYOUT.source()) == 0


async def test_worker_drains_only_its_partition(
    fast: InMemoryFastStore, durable: InMemoryWorkStore, cache: ReadThroughCache
):
    layout = QueueLayout(partitions=2)
    job = MutationJob.delete(ADMIN_A, "w1")
    mine = layout.partition_for("w1")
    await fast.push(layout.source(mine), codec.encode(job))

    other = MutationWorker(fast, durable, cache, layout=layout, partition=1 - mine)
    assert await other.process_one(timeout=0.01) is None

    owner = MutationWorker(fast, durable, cache, layout=layout, partition=mine)
    assert await owner.process_one(timeout=0.1) is JobOutcome.APPLIED


async def test_run_survives_unexpected_apply_error(
    worker: MutationWorker,
    admission: MutationAdmission,
    durable: InMemoryWorkStore,
    fast: InMemoryFastStore,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(durable, "update", _raise_runtime_error)
    await admission.submit_update(ADMIN_A, "w1", {"prompt": "a wolf"})
    await admission.submit_delete(ADMIN_A, "w1")

    task = asyncio.create_task(worker.run())
    for _ in range(100):
        if await durable.get("w1") is None:
            break
        await asyncio.sleep(0.01)

    worker.stop()
    await asyncio.wait_for(task, timeout=1)
    assert await durable.get("w1") is None
    [letter] = await _dead_letters(fast)
    assert letter.reason is DeadLetterReason.APPLY_FAILED
