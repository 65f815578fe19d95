from datetime import UTC, datetime, timedelta

import pytest

from deferq.adapters.durable.memory import InMemoryWorkStore
from deferq.adapters.fast_store.memory import InMemoryFastStore
from deferq.core.cache import ReadThroughCache
from deferq.core.keys import listing_namespace, work_key
from deferq.core.queries import WorkQueries
from deferq.domain.errors import AuthorizationError, EntityNotFoundError
from deferq.domain.models import Actor, ActorRole, Work

ADMIN_A = Actor(id="admin-a", role=ActorRole.ADMIN)
ADMIN_B = Actor(id="admin-b", role=ActorRole.ADMIN)
ROOT = Actor(id="root", role=ActorRole.SUPERADMIN)

BASE = datetime(2024, 1, 1, tzinfo=UTC)


def _work(id: str, owner: str = "admin-a", age: int = 0) -> Work:
    return Work(
        id=id,
        owner_id=owner,
        prompt=f"prompt {id}",
        image_url=f"https://img.example/{id}.png",
        category_id="cat-1",
        created_at=BASE - timedelta(minutes=age),
    )


@pytest.fixture
def fast() -> InMemoryFastStore:
    return InMemoryFastStore()


@pytest.fixture
def durable() -> InMemoryWorkStore:
    store = InMemoryWorkStore()
    store.add(_work("w1", "admin-a", age=2))
    store.add(_work("w2", "admin-a", age=1))
    store.add(_work("w3", "admin-b"))
    return store


@pytest.fixture
def queries(durable: InMemoryWorkStore, fast: InMemoryFastStore) -> WorkQueries:
    return WorkQueries(durable, ReadThroughCache(fast), page_size=1)


# ---------------------------------------------------------------------------
# fetch_work
# ---------------------------------------------------------------------------


async def test_fetch_miss_then_hit(queries: WorkQueries, durable: InMemoryWorkStore):
    first = await queries.fetch_work(ADMIN_A, "w1")
    second = await queries.fetch_work(ADMIN_A, "w1")

    assert not first.hit
    assert second.hit
    assert first.value == second.value
    assert durable.calls.count("get") == 1


async def test_fetch_missing_raises_not_found(queries: WorkQueries):
    with pytest.raises(EntityNotFoundError):
        await queries.fetch_work(ADMIN_A, "ghost")


async def test_foreign_admin_gets_not_found_even_from_cache(queries: WorkQueries):
    await queries.fetch_work(ADMIN_B, "w3")
    with pytest.raises(EntityNotFoundError):
        await queries.fetch_work(ADMIN_A, "w3")


async def test_superadmin_reads_any_work(queries: WorkQueries):
    result = await queries.fetch_work(ROOT, "w3")
    assert result.value.owner_id == "admin-b"


async def test_fetch_serves_cached_snapshot_until_invalidated(
    queries: WorkQueries, durable: InMemoryWorkStore, fast: InMemoryFastStore
):
    await queries.fetch_work(ADMIN_A, "w1")
    await durable.update("w1", {"prompt": "changed"})

    assert (await queries.fetch_work(ADMIN_A, "w1")).value.prompt == "prompt w1"

    await fast.delete(work_key("w1"))
    assert (await queries.fetch_work(ADMIN_A, "w1")).value.prompt == "changed"


async def test_fetch_works_without_cache(queries: WorkQueries, fast: InMemoryFastStore):
    fast.available = False
    result = await queries.fetch_work(ADMIN_A, "w1")
    assert result.value.id == "w1"
    assert not result.hit


# ---------------------------------------------------------------------------
# list_owner_works
# ---------------------------------------------------------------------------


async def test_listing_pages_newest_first(queries: WorkQueries):
    first = await queries.list_owner_works(ADMIN_A, page=1)
    second = await queries.list_owner_works(ADMIN_A, page=2)
    assert [w.id for w in first.value] == ["w2"]
    assert [w.id for w in second.value] == ["w1"]


async def test_page_below_one_is_first_page(queries: WorkQueries):
    result = await queries.list_owner_works(ADMIN_A, page=0)
    assert [w.id for w in result.value] == ["w2"]


async def test_listing_is_cached_until_bumped(
    queries: WorkQueries, durable: InMemoryWorkStore
):
    await queries.list_owner_works(ADMIN_A)
    assert (await queries.list_owner_works(ADMIN_A)).hit

    durable.add(_work("w4", "admin-a", age=-1))
    assert [w.id for w in (await queries.list_owner_works(ADMIN_A)).value] == ["w2"]

    await queries.cache.bump(listing_namespace("admin-a"))
    result = await queries.list_owner_works(ADMIN_A)
    assert not result.hit
    assert [w.id for w in result.value] == ["w4"]


async def test_listings_are_per_owner(queries: WorkQueries):
    result = await queries.list_owner_works(ADMIN_B)
    assert [w.id for w in result.value] == ["w3"]


async def test_superadmin_cannot_list_as_owner(queries: WorkQueries):
    with pytest.raises(AuthorizationError):
        await queries.list_owner_works(ROOT)


async def test_listing_works_without_cache(
    queries: WorkQueries, fast: InMemoryFastStore
):
    fast.available = False
    result = await queries.list_owner_works(ADMIN_A)
    assert [w.id for w in result.value] == ["w2"]
    assert not result.hit
