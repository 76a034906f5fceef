"""Content-addressed, TTL-bound cache of completed results.

The backend is chosen once at construction: Redis when a URL is configured,
a JSON file next to the history ledger for the CLI, or an in-process store.
Hit/miss counters live in the backend so every process sharing it reports
the same numbers. Cache failures never break a query; they are logged and
counted as misses.
"""

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import redis.asyncio as aioredis
from filelock import FileLock

from peer_review.models import CacheStats, Result
from peer_review.serialization import result_from_json, result_to_json

logger = logging.getLogger(__name__)

KEY_PREFIX = "peer-review:"
# Outside KEY_PREFIX so it never counts toward the cache size
STATS_KEY = "peer-review-stats"
DEFAULT_TTL_SEC = 86400
LOCK_ACQUISITION_TIMEOUT = 5

COUNTER_NAMES = tuple(f.name for f in fields(CacheStats))


def normalize_query(query: str) -> str:
    return query.strip().lower()


def cache_key(query: str) -> str:
    """Fingerprint of the normalized query, namespaced by KEY_PREFIX."""
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest}"


class CacheBackend(ABC):
    """Byte store with per-key expiry, plus the shared hit/miss counters."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        ...

    @abstractmethod
    async def set_with_ttl(self, key: str, value: bytes, ttl_sec: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys_with_prefix(self, prefix: str) -> list[str]:
        ...

    @abstractmethod
    async def incr_counters(self, *names: str) -> None:
        ...

    @abstractmethod
    async def get_counters(self) -> CacheStats:
        ...

    @abstractmethod
    async def reset_counters(self) -> None:
        ...

    async def close(self) -> None:
        """Release connections, if any."""


@dataclass(frozen=True)
class CacheEntry:
    value: bytes
    created_at: float
    ttl_sec: int

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_sec


class MemoryCacheBackend(CacheBackend):
    """In-process store. Expiry is checked lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._items: dict[str, CacheEntry] = {}
        self._counters = CacheStats()
        self._clock = clock

    async def get(self, key: str) -> bytes | None:
        item = self._items.get(key)
        if item is None:
            return None
        if item.expired(self._clock()):
            del self._items[key]
            return None
        return item.value

    async def set_with_ttl(self, key: str, value: bytes, ttl_sec: int) -> None:
        self._items[key] = CacheEntry(value=value, created_at=self._clock(), ttl_sec=ttl_sec)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        now = self._clock()
        for key in [k for k, item in self._items.items() if item.expired(now)]:
            del self._items[key]
        return [k for k in self._items if k.startswith(prefix)]

    async def incr_counters(self, *names: str) -> None:
        for name in names:
            setattr(self._counters, name, getattr(self._counters, name) + 1)

    async def get_counters(self) -> CacheStats:
        return CacheStats(**{name: getattr(self._counters, name) for name in COUNTER_NAMES})

    async def reset_counters(self) -> None:
        self._counters = CacheStats()


class FileCacheBackend(CacheBackend):
    """One JSON document holding entries and counters, shared across processes.

    Every operation runs load-change-save under a sibling ``.lock`` file and
    writes through a temp file and a rename. Expiry is checked lazily.
    """

    def __init__(
        self,
        path: Path,
        clock: Callable[[], float] = time.time,
        lock_timeout_sec: float = LOCK_ACQUISITION_TIMEOUT,
    ) -> None:
        self._path = path
        self._clock = clock
        self._lock = FileLock(str(path) + ".lock", timeout=lock_timeout_sec)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {"entries": {}, "counters": {}}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return {"entries": dict(raw["entries"]), "counters": dict(raw["counters"])}
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Cache file %s is unreadable, starting empty: %s", self._path, exc)
            return {"entries": {}, "counters": {}}

    def _write(self, data: dict[str, Any]) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self._path)

    def _transact(self, change: Callable[[dict[str, Any]], tuple[bool, Any]]) -> Any:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            data = self._read()
            dirty, value = change(data)
            if dirty:
                self._write(data)
            return value

    async def _run(self, change: Callable[[dict[str, Any]], tuple[bool, Any]]) -> Any:
        return await asyncio.to_thread(self._transact, change)

    def _purge_expired(self, entries: dict[str, Any]) -> bool:
        now = self._clock()
        stale = [
            key for key, item in entries.items()
            if now - item["created_at"] >= item["ttl_sec"]
        ]
        for key in stale:
            del entries[key]
        return bool(stale)

    async def get(self, key: str) -> bytes | None:
        def lookup(data):
            item = data["entries"].get(key)
            if item is None:
                return False, None
            entry = CacheEntry(
                value=item["value"].encode("utf-8"),
                created_at=item["created_at"],
                ttl_sec=item["ttl_sec"],
            )
            if entry.expired(self._clock()):
                del data["entries"][key]
                return True, None
            return False, entry.value

        return await self._run(lookup)

    async def set_with_ttl(self, key: str, value: bytes, ttl_sec: int) -> None:
        def store(data):
            data["entries"][key] = {
                "value": value.decode("utf-8"),
                "created_at": self._clock(),
                "ttl_sec": ttl_sec,
            }
            return True, None

        await self._run(store)

    async def delete(self, key: str) -> None:
        def remove(data):
            return data["entries"].pop(key, None) is not None, None

        await self._run(remove)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        def listing(data):
            dirty = self._purge_expired(data["entries"])
            return dirty, [k for k in data["entries"] if k.startswith(prefix)]

        return await self._run(listing)

    async def incr_counters(self, *names: str) -> None:
        def bump(data):
            for name in names:
                data["counters"][name] = int(data["counters"].get(name, 0)) + 1
            return True, None

        await self._run(bump)

    async def get_counters(self) -> CacheStats:
        def snapshot(data):
            return False, CacheStats(**{n: int(data["counters"].get(n, 0)) for n in COUNTER_NAMES})

        return await self._run(snapshot)

    async def reset_counters(self) -> None:
        def reset(data):
            data["counters"] = {}
            return True, None

        await self._run(reset)


class RedisCacheBackend(CacheBackend):
    """Redis store; expiry is native (SETEX), counters are a hash (HINCRBY)."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(aioredis.Redis.from_url(url))

    async def get(self, key: str) -> bytes | None:
        return await self._client.get(key)

    async def set_with_ttl(self, key: str, value: bytes, ttl_sec: int) -> None:
        await self._client.setex(key, ttl_sec, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        keys: list[str] = []
        async for key in self._client.scan_iter(match=f"{prefix}*"):
            keys.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        return keys

    async def incr_counters(self, *names: str) -> None:
        for name in names:
            await self._client.hincrby(STATS_KEY, name, 1)

    async def get_counters(self) -> CacheStats:
        raw = await self._client.hgetall(STATS_KEY)
        counts = {
            (k.decode("utf-8") if isinstance(k, bytes) else k): int(v)
            for k, v in raw.items()
        }
        return CacheStats(**{name: counts.get(name, 0) for name in COUNTER_NAMES})

    async def reset_counters(self) -> None:
        await self._client.delete(STATS_KEY)

    async def close(self) -> None:
        await self._client.aclose()


@dataclass(frozen=True)
class CacheReport:
    total_queries: int
    hits: int
    misses: int
    hit_rate: float    # percent, two decimals
    size: int


class ResultCache:
    """Query-fingerprint cache of Results with hit/miss accounting."""

    def __init__(self, backend: CacheBackend, default_ttl_sec: int = DEFAULT_TTL_SEC) -> None:
        self._backend = backend
        self._default_ttl_sec = default_ttl_sec

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    async def _count(self, *names: str) -> None:
        try:
            await self._backend.incr_counters(*names)
        except Exception as exc:
            logger.warning("Cache counter update failed: %s", exc)

    async def get(self, query: str) -> Result | None:
        """Non-expired Result for the query, or None. Counts exactly one hit or miss."""
        key = cache_key(query)
        try:
            raw = await self._backend.get(key)
            result = result_from_json(raw) if raw is not None else None
        except Exception as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            result = None

        if result is None:
            await self._count("total_queries", "misses")
            logger.debug("Cache miss: %s", key)
            return None

        await self._count("total_queries", "hits")
        logger.info("Cache hit: %s", key)
        return result

    async def set(self, query: str, result: Result, ttl_sec: int | None = None) -> None:
        key = cache_key(query)
        ttl = self._default_ttl_sec if ttl_sec is None else ttl_sec
        try:
            await self._backend.set_with_ttl(key, result_to_json(result).encode("utf-8"), ttl)
        except Exception as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    async def clear_one(self, query: str) -> None:
        key = cache_key(query)
        try:
            await self._backend.delete(key)
        except Exception as exc:
            logger.warning("Cache delete failed for %s: %s", key, exc)

    async def clear_all(self) -> None:
        """Drop every entry under the namespace and reset the counters."""
        try:
            for key in await self._backend.keys_with_prefix(KEY_PREFIX):
                await self._backend.delete(key)
        except Exception as exc:
            logger.warning("Cache clear failed: %s", exc)
        try:
            await self._backend.reset_counters()
        except Exception as exc:
            logger.warning("Cache counter reset failed: %s", exc)

    async def stats(self) -> CacheReport:
        try:
            size = len(await self._backend.keys_with_prefix(KEY_PREFIX))
        except Exception as exc:
            logger.warning("Cache size lookup failed: %s", exc)
            size = 0
        try:
            counters = await self._backend.get_counters()
        except Exception as exc:
            logger.warning("Cache counter lookup failed: %s", exc)
            counters = CacheStats()
        total = counters.total_queries
        hit_rate = (counters.hits / total) * 100 if total > 0 else 0.0
        return CacheReport(
            total_queries=total,
            hits=counters.hits,
            misses=counters.misses,
            hit_rate=round(hit_rate, 2),
            size=size,
        )


def build_cache(
    redis_url: str | None,
    default_ttl_sec: int = DEFAULT_TTL_SEC,
    cache_file: Path | None = None,
) -> ResultCache:
    """Pick the backend once: Redis when a URL is given, else the cache file, else memory."""
    if redis_url:
        logger.info("Using Redis result cache")
        return ResultCache(RedisCacheBackend.from_url(redis_url), default_ttl_sec)
    if cache_file is not None:
        logger.info("Redis not configured, using file result cache at %s", cache_file)
        return ResultCache(FileCacheBackend(cache_file), default_ttl_sec)
    logger.info("Redis not configured, using in-memory result cache")
    return ResultCache(MemoryCacheBackend(), default_ttl_sec)
