"""Per-user history ledger of completed queries, persisted all-or-nothing."""

import asyncio
import contextlib
import copy
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, ContextManager, TypeVar

from filelock import FileLock, Timeout

from peer_review.errors import LedgerError
from peer_review.models import (
    HistoryEntry,
    HistoryFilter,
    HistoryStats,
    ProviderPerformance,
    Result,
)
from peer_review.serialization import history_entry_from_dict, to_dict

logger = logging.getLogger(__name__)

DEFAULT_USER = "default"
DEFAULT_MAX_PER_USER = 100
LOCK_ACQUISITION_TIMEOUT = 10

T = TypeVar("T")


class LedgerStore(ABC):
    """Load-all / replace-all persistence for the ledger. Blocking I/O is fine."""

    @abstractmethod
    def load_all(self) -> list[HistoryEntry]:
        ...

    @abstractmethod
    def save_all(self, entries: list[HistoryEntry]) -> None:
        ...

    def lock(self) -> ContextManager[Any]:
        """Exclusive section around a load/save pair, shared by every writer of this store."""
        return contextlib.nullcontext()

    def version(self) -> Any:
        """Token that changes whenever another writer replaces the stored ledger."""
        return None


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._entries: list[HistoryEntry] = []

    def load_all(self) -> list[HistoryEntry]:
        return list(self._entries)

    def save_all(self, entries: list[HistoryEntry]) -> None:
        self._entries = list(entries)


class JsonFileLedgerStore(LedgerStore):
    """Whole ledger as one JSON array.

    Writes go through a temp file and a rename. A sibling ``.lock`` file
    serializes writers across processes, so two CLI commands appending at the
    same time both land.
    """

    def __init__(self, path: Path, lock_timeout_sec: float = LOCK_ACQUISITION_TIMEOUT) -> None:
        self._path = path
        self._lock = FileLock(str(path) + ".lock", timeout=lock_timeout_sec)

    @property
    def path(self) -> Path:
        return self._path

    def lock(self) -> ContextManager[Any]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return self._lock

    def version(self) -> Any:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def load_all(self) -> list[HistoryEntry]:
        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return [history_entry_from_dict(item) for item in raw]
        except (ValueError, KeyError, TypeError) as exc:
            raise LedgerError(f"History file {self._path} is unreadable: {exc}") from exc

    def save_all(self, entries: list[HistoryEntry]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps([to_dict(e) for e in entries], indent=2), encoding="utf-8")
        tmp.replace(self._path)


def _top_score(result: Result) -> float:
    return max(result.aggregated_scores.values(), default=0.0)


def _matches(entry: HistoryEntry, flt: HistoryFilter) -> bool:
    if flt.start_date is not None and entry.timestamp < flt.start_date:
        return False
    if flt.end_date is not None and entry.timestamp > flt.end_date:
        return False
    if flt.min_score is not None and _top_score(entry.result) < flt.min_score:
        return False
    if flt.max_score is not None and _top_score(entry.result) > flt.max_score:
        return False
    if flt.search_query:
        needle = flt.search_query.lower()
        if needle not in entry.query.lower() and needle not in entry.result.best_answer.lower():
            return False
    return True


# A mutation gets the freshly loaded ledger and returns (entries to save, value).
# Returning None for the entries skips the write.
Mutation = Callable[[list[HistoryEntry]], tuple[list[HistoryEntry] | None, T]]


class HistoryLedger:
    """Most-recent-first ledger with per-user retention.

    Every mutation reloads the store, changes it and writes it back inside the
    store's lock (a file lock for the JSON store), and additionally under one
    asyncio lock per ledger instance. Reads are served from an in-memory copy
    that is refreshed whenever the store's version changes and dropped when a
    write fails.
    """

    def __init__(
        self,
        store: LedgerStore,
        max_per_user: int = DEFAULT_MAX_PER_USER,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        if max_per_user < 1:
            raise ValueError("max_per_user must be >= 1")
        self._store = store
        self._max_per_user = max_per_user
        self._clock = clock
        self._id_factory = id_factory
        self._lock = asyncio.Lock()
        self._cache: list[HistoryEntry] | None = None
        self._cache_version: Any = None

    async def _load(self) -> list[HistoryEntry]:
        version = await asyncio.to_thread(self._store.version)
        if self._cache is None or version != self._cache_version:
            self._cache = await asyncio.to_thread(self._store.load_all)
            self._cache_version = version
        return list(self._cache)

    def _transact(self, mutation: Mutation[T]) -> tuple[list[HistoryEntry], Any, T]:
        try:
            with self._store.lock():
                entries = self._store.load_all()
                updated, value = mutation(entries)
                if updated is None:
                    return entries, self._store.version(), value
                self._store.save_all(updated)
                return updated, self._store.version(), value
        except Timeout as exc:
            raise LedgerError(f"Timed out waiting for the history lock: {exc}") from exc

    async def _mutate(self, mutation: Mutation[T]) -> T:
        async with self._lock:
            try:
                entries, version, value = await asyncio.to_thread(self._transact, mutation)
            except Exception as exc:
                self._cache = None
                logger.error("Failed to save history: %s", exc)
                if isinstance(exc, LedgerError):
                    raise
                raise LedgerError(f"Failed to save history: {exc}") from exc
            self._cache = list(entries)
            self._cache_version = version
        return value

    async def append(
        self,
        user_id: str,
        query: str,
        result: Result,
        cache_hit: bool,
    ) -> HistoryEntry:
        """Record a completed query at the head of the ledger and enforce the per-user cap."""
        entry = HistoryEntry(
            id=self._id_factory(),
            query=query,
            result=copy.deepcopy(result),
            user_id=user_id,
            timestamp=self._clock(),
            cache_hit=cache_hit,
        )

        def insert(entries: list[HistoryEntry]) -> tuple[list[HistoryEntry], None]:
            entries.insert(0, entry)
            user_ids = [e.id for e in entries if e.user_id == user_id]
            if len(user_ids) > self._max_per_user:
                drop = set(user_ids[self._max_per_user:])
                entries = [e for e in entries if e.id not in drop]
                logger.info("Trimmed %d old history entries for user %s", len(drop), user_id)
            return entries, None

        await self._mutate(insert)
        return entry

    async def list_entries(self, user_id: str = DEFAULT_USER, flt: HistoryFilter | None = None) -> list[HistoryEntry]:
        async with self._lock:
            entries = await self._load()
        flt = flt or HistoryFilter()
        return [e for e in entries if e.user_id == user_id and _matches(e, flt)]

    async def get_by_id(self, entry_id: str, user_id: str = DEFAULT_USER) -> HistoryEntry | None:
        async with self._lock:
            entries = await self._load()
        return next((e for e in entries if e.id == entry_id and e.user_id == user_id), None)

    async def delete_by_id(self, entry_id: str, user_id: str = DEFAULT_USER) -> bool:
        """Returns False when the entry is absent or owned by someone else."""

        def remove(entries: list[HistoryEntry]) -> tuple[list[HistoryEntry] | None, bool]:
            kept = [e for e in entries if not (e.id == entry_id and e.user_id == user_id)]
            if len(kept) == len(entries):
                return None, False
            return kept, True

        return await self._mutate(remove)

    async def clear(self, user_id: str = DEFAULT_USER) -> int:
        """Remove all of one user's entries. Returns how many were removed."""

        def remove_all(entries: list[HistoryEntry]) -> tuple[list[HistoryEntry], int]:
            kept = [e for e in entries if e.user_id != user_id]
            return kept, len(entries) - len(kept)

        return await self._mutate(remove_all)

    async def stats(self, user_id: str = DEFAULT_USER) -> HistoryStats:
        entries = await self.list_entries(user_id)

        total = len(entries)
        hits = sum(1 for e in entries if e.cache_hit)
        top_scores = [_top_score(e.result) for e in entries]
        avg_score = sum(top_scores) / len(top_scores) if top_scores else 0.0

        totals: dict[str, float] = {}
        counts: dict[str, int] = {}
        for e in entries:
            for key, score in e.result.aggregated_scores.items():
                totals[key] = totals.get(key, 0.0) + score
                counts[key] = counts.get(key, 0) + 1

        return HistoryStats(
            total_queries=total,
            cache_hits=hits,
            cache_misses=total - hits,
            cache_hit_rate=(hits / total) * 100 if total > 0 else 0.0,
            avg_score=round(avg_score, 2),
            provider_performance={
                key: ProviderPerformance(count=counts[key], mean_score=totals[key] / counts[key])
                for key in totals
            },
        )
