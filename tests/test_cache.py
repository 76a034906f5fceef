"""Tests for peer_review/cache.py, no Redis server needed."""

import pytest

from peer_review.cache import (
    KEY_PREFIX,
    STATS_KEY,
    CacheBackend,
    FileCacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    ResultCache,
    build_cache,
    cache_key,
)
from peer_review.models import Result
from tests.conftest import FakeClock, make_result


class _FailingBackend(CacheBackend):
    async def get(self, key):
        raise ConnectionError("backend down")

    async def set_with_ttl(self, key, value, ttl_sec):
        raise ConnectionError("backend down")

    async def delete(self, key):
        raise ConnectionError("backend down")

    async def keys_with_prefix(self, prefix):
        raise ConnectionError("backend down")

    async def incr_counters(self, *names):
        raise ConnectionError("backend down")

    async def get_counters(self):
        raise ConnectionError("backend down")

    async def reset_counters(self):
        raise ConnectionError("backend down")


class _FakeRedis:
    """Just enough of redis.asyncio.Redis for the backend."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self.data.pop(key, None)
        self.hashes.pop(key, None)

    async def hincrby(self, key, field, amount):
        fields = self.hashes.setdefault(key, {})
        name = field.encode("utf-8")
        fields[name] = str(int(fields.get(name, b"0")) + amount).encode("utf-8")

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key.encode("utf-8")

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> ResultCache:
    return ResultCache(MemoryCacheBackend(clock=clock), default_ttl_sec=60)


def test_cache_key_normalizes_query():
    assert cache_key("  Binary Search ") == cache_key("binary search")
    assert cache_key("binary search") != cache_key("linear search")
    assert cache_key("x").startswith(KEY_PREFIX)


async def test_set_then_get_returns_equal_result(cache, sample_result):
    await cache.set(sample_result.query, sample_result)
    cached = await cache.get(sample_result.query.upper())
    assert isinstance(cached, Result)
    assert cached == sample_result


async def test_miss_then_hit_counters(cache, sample_result):
    assert await cache.get("Implement a binary search") is None
    await cache.set("Implement a binary search", sample_result)
    assert await cache.get("implement a binary search") is not None

    report = await cache.stats()
    assert (report.total_queries, report.hits, report.misses) == (2, 1, 1)
    assert report.hit_rate == 50.0
    assert report.size == 1


async def test_entry_expires_after_ttl(cache, clock, sample_result):
    await cache.set("q", sample_result)
    clock.now += 59
    assert await cache.get("q") is not None
    clock.now += 1
    assert await cache.get("q") is None

    report = await cache.stats()
    assert report.misses == 1
    assert report.size == 0


async def test_per_entry_ttl_override(cache, clock, sample_result):
    await cache.set("q", sample_result, ttl_sec=5)
    clock.now += 5
    assert await cache.get("q") is None


async def test_set_overwrites(cache, sample_result):
    await cache.set("q", sample_result)
    newer = make_result(scores={"a": 1.0, "b": 2.0})
    await cache.set("q", newer)
    assert (await cache.get("q")).best_provider == "b"


async def test_clear_one_and_clear_all(cache, sample_result):
    await cache.set("one", sample_result)
    await cache.set("two", sample_result)
    await cache.get("one")

    await cache.clear_one("one")
    assert await cache.get("one") is None
    assert (await cache.stats()).size == 1

    await cache.clear_all()
    report = await cache.stats()
    assert (report.total_queries, report.hits, report.misses, report.size) == (0, 0, 0, 0)
    assert report.hit_rate == 0.0


async def test_backend_failure_counts_as_miss(sample_result):
    cache = ResultCache(_FailingBackend())
    await cache.set("q", sample_result)
    assert await cache.get("q") is None
    await cache.clear_all()

    report = await cache.stats()
    assert report.size == 0
    assert report.total_queries == 0


async def test_corrupt_payload_counts_as_miss(clock):
    backend = MemoryCacheBackend(clock=clock)
    await backend.set_with_ttl(cache_key("q"), b"{not json", 60)
    cache = ResultCache(backend)
    assert await cache.get("q") is None
    assert (await cache.stats()).misses == 1


async def test_redis_backend_round_trip(sample_result):
    client = _FakeRedis()
    cache = ResultCache(RedisCacheBackend(client), default_ttl_sec=120)

    await cache.set("Q", sample_result)
    assert client.ttls[cache_key("q")] == 120
    assert await cache.get("q") == sample_result
    assert (await cache.stats()).size == 1

    await cache.clear_all()
    assert client.data == {}
    await cache.backend.close()
    assert client.closed is True


def test_build_cache_without_url_uses_memory():
    cache = build_cache(None, default_ttl_sec=10)
    assert isinstance(cache.backend, MemoryCacheBackend)


def test_build_cache_with_url_uses_redis():
    cache = build_cache("redis://localhost:6379/0")
    assert isinstance(cache.backend, RedisCacheBackend)


def test_build_cache_with_file_uses_file_backend(tmp_path):
    cache = build_cache(None, cache_file=tmp_path / "cache.json")
    assert isinstance(cache.backend, FileCacheBackend)
    assert cache.backend.path == tmp_path / "cache.json"


def test_build_cache_prefers_redis_over_file(tmp_path):
    cache = build_cache("redis://localhost:6379/0", cache_file=tmp_path / "cache.json")
    assert isinstance(cache.backend, RedisCacheBackend)


async def test_caches_sharing_redis_share_counters(sample_result):
    client = _FakeRedis()
    first = ResultCache(RedisCacheBackend(client))
    second = ResultCache(RedisCacheBackend(client))

    await first.get("q")
    await second.set("q", sample_result)
    await second.get("q")

    report = await first.stats()
    assert (report.total_queries, report.hits, report.misses) == (2, 1, 1)
    # the counter hash sits outside the entry namespace
    assert report.size == 1
    assert STATS_KEY in client.hashes

    await first.clear_all()
    assert STATS_KEY not in client.hashes
    assert (await second.stats()).total_queries == 0


async def test_file_cache_is_shared_across_instances(tmp_path, sample_result):
    path = tmp_path / "data" / "cache.json"
    first_run = ResultCache(FileCacheBackend(path))
    assert await first_run.get("Implement a binary search") is None
    await first_run.set("Implement a binary search", sample_result)

    second_run = ResultCache(FileCacheBackend(path))
    assert await second_run.get("implement a binary search") == sample_result

    report = await ResultCache(FileCacheBackend(path)).stats()
    assert (report.total_queries, report.hits, report.misses) == (2, 1, 1)
    assert report.hit_rate == 50.0
    assert report.size == 1


async def test_file_cache_entry_expires(tmp_path, clock, sample_result):
    cache = ResultCache(FileCacheBackend(tmp_path / "cache.json", clock=clock), default_ttl_sec=60)
    await cache.set("q", sample_result)
    clock.now += 59
    assert await cache.get("q") is not None
    clock.now += 1
    assert await cache.get("q") is None
    assert (await cache.stats()).size == 0


async def test_file_cache_clear_all(tmp_path, sample_result):
    path = tmp_path / "cache.json"
    cache = ResultCache(FileCacheBackend(path))
    await cache.set("one", sample_result)
    await cache.get("one")

    await ResultCache(FileCacheBackend(path)).clear_all()
    report = await cache.stats()
    assert (report.total_queries, report.hits, report.size) == (0, 0, 0)


async def test_unreadable_cache_file_starts_empty(tmp_path, sample_result):
    path = tmp_path / "cache.json"
    path.write_text("{broken", encoding="utf-8")
    cache = ResultCache(FileCacheBackend(path))
    assert await cache.get("q") is None

    await cache.set("q", sample_result)
    assert await cache.get("q") == sample_result
    assert (await cache.stats()).misses == 1
