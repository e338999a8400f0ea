from uuid import uuid4

import pytest

from app.core.cache import YearScopedCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def cache(clock: FakeClock) -> YearScopedCache:
    return YearScopedCache(ttl_seconds=30, clock=clock)


def test_entries_expire_after_ttl(cache: YearScopedCache, clock: FakeClock) -> None:
    key = cache.make_key("fee-records", "y1")
    cache.set(key, ["row"])
    assert cache.get(key) == ["row"]
    clock.now += 29
    assert cache.get(key) == ["row"]
    clock.now += 1
    assert cache.get(key) is None


def test_uuid_and_string_scopes_share_an_entry(cache: YearScopedCache) -> None:
    year_id = uuid4()
    cache.set(cache.make_key("fee-stats", year_id), 1)
    assert cache.get(cache.make_key("fee-stats", str(year_id))) == 1


def test_invalidate_year_leaves_other_years(cache: YearScopedCache) -> None:
    cache.set(cache.make_key("fee-records", "y1", "class-a"), 1)
    cache.set(cache.make_key("fee-records", "y1"), 2)
    cache.set(cache.make_key("fee-records", "y2"), 3)
    cache.set(cache.make_key("fee-stats", "y1"), 4)

    dropped = cache.invalidate_year("y1", ("fee-records",))

    assert dropped == 2
    assert cache.get(cache.make_key("fee-records", "y2")) == 3
    assert cache.get(cache.make_key("fee-stats", "y1")) == 4


def test_invalidate_after_payment(cache: YearScopedCache) -> None:
    cache.set(cache.make_key("student-fees", "s1", "y1"), 1)
    cache.set(cache.make_key("payment-history", "s1", None), 2)
    cache.set(cache.make_key("student-fees", "s2", "y1"), 3)
    cache.set(cache.make_key("fee-stats", "y1"), 4)
    cache.set(cache.make_key("student-enrollments", "y1"), 5)

    cache.invalidate_after_payment("s1", "y1")

    assert cache.get(cache.make_key("student-fees", "s1", "y1")) is None
    assert cache.get(cache.make_key("payment-history", "s1", None)) is None
    assert cache.get(cache.make_key("fee-stats", "y1")) is None
    assert cache.get(cache.make_key("student-fees", "s2", "y1")) == 3
    assert cache.get(cache.make_key("student-enrollments", "y1")) == 5


def test_invalidate_after_promotion_keeps_source_year(cache: YearScopedCache) -> None:
    cache.set(cache.make_key("fee-records", "old"), 1)
    cache.set(cache.make_key("fee-records", "new"), 2)
    cache.set(cache.make_key("promotion-history", None, None), 3)

    cache.invalidate_after_promotion("old", "new")

    assert cache.get(cache.make_key("fee-records", "old")) == 1
    assert cache.get(cache.make_key("fee-records", "new")) is None
    assert cache.get(cache.make_key("promotion-history", None, None)) is None


@pytest.mark.asyncio
async def test_get_or_load_calls_loader_once(cache: YearScopedCache) -> None:
    calls = []

    async def loader():
        calls.append(1)
        return {"total": 1}

    key = cache.make_key("fee-stats", "y1")
    assert await cache.get_or_load(key, loader) == {"total": 1}
    assert await cache.get_or_load(key, loader) == {"total": 1}
    assert len(calls) == 1
