import asyncio

from src.shared.batch.cache import CacheEntry, ContentCache, InMemoryCacheStore, fingerprint_payload


class FailingStore:
    def get(self, fingerprint):
        raise ConnectionError("store offline")

    def put(self, entry):
        raise ConnectionError("store offline")

    def delete_expired(self, now):
        raise ConnectionError("store offline")


def test_fingerprint_is_stable_and_scoped_by_operation():
    image = b"\x89PNG frame bytes"

    assert fingerprint_payload(image) == fingerprint_payload(bytearray(image))
    assert len(fingerprint_payload(image)) == 64
    assert fingerprint_payload(image, operation="analyze") != fingerprint_payload(image, operation="prompt")
    assert fingerprint_payload("data:image/png;base64,AAAA") != fingerprint_payload("data:image/png;base64,AAAB")


def test_fingerprint_prefix_ignores_trailing_bytes():
    assert fingerprint_payload(b"abcdef-1", prefix_bytes=6) == fingerprint_payload(b"abcdef-2", prefix_bytes=6)


def test_lookup_returns_stored_result_until_expiry(clock):
    cache = ContentCache(default_ttl_seconds=100, clock=clock)

    async def scenario():
        assert await cache.lookup("fp") is None
        assert await cache.store("fp", {"description": "a quarterback"}) is True
        first = await cache.lookup("fp")
        clock.advance(101)
        second = await cache.lookup("fp")
        return first, second

    first, second = asyncio.run(scenario())

    assert first == {"description": "a quarterback"}
    assert second is None
    assert cache.get_stats()["hits"] == 1
    assert cache.get_stats()["misses"] == 2


def test_custom_ttl_overrides_default(clock):
    store = InMemoryCacheStore()
    cache = ContentCache(store, default_ttl_seconds=100, clock=clock)

    asyncio.run(cache.store("fp", "value", ttl_seconds=5))

    assert store.get("fp").expires_at == 5


def test_store_failures_are_swallowed():
    cache = ContentCache(FailingStore())

    async def scenario():
        stored = await cache.store("fp", "value")
        found = await cache.lookup("fp")
        swept = await cache.sweep_expired()
        return stored, found, swept

    assert asyncio.run(scenario()) == (False, None, 0)
    assert cache.get_stats()["store_failures"] == 1


def test_sweep_removes_only_expired_entries(clock):
    store = InMemoryCacheStore()
    store.put(CacheEntry("old", "a", created_at=0, expires_at=10))
    store.put(CacheEntry("new", "b", created_at=0, expires_at=1000))
    cache = ContentCache(store, clock=clock)
    clock.advance(50)

    removed = asyncio.run(cache.sweep_expired())

    assert removed == 1
    assert len(store) == 1
    assert store.get("new") is not None


def test_run_sweeper_stops_when_event_is_set(clock):
    store = InMemoryCacheStore()
    store.put(CacheEntry("old", "a", created_at=0, expires_at=-1))
    cache = ContentCache(store, clock=clock)

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(cache.run_sweeper(0.01, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())

    assert len(store) == 0
    assert cache.get_stats()["swept"] == 1
