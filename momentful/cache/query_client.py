"""Process-local query cache.

Entries are keyed by tuples and matched by prefix, so ``("edited-images",)``
addresses every edited-image scope and ``("timeline", lineage_id)`` every
user's view of one lineage. Cached data is stored frozen (lists become
tuples) so a snapshot can be restored exactly.

Reads go through ``fetch_query``: fresh data is served from memory, stale or
invalidated data is refetched, and concurrent readers share one in-flight
fetch. ``invalidate_queries`` marks entries stale and immediately refetches
the ones that have mounted observers.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from momentful.exceptions import CacheReconciliationError

logger = logging.getLogger(__name__)

QueryKey = tuple[Any, ...]
Fetcher = Callable[[], Awaitable[Any]]
Updater = Callable[[Any], Any]
Listener = Callable[[Any], None]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def freeze(value: Any) -> Any:
    """Lists and sets become tuples so cached values cannot be mutated in place."""
    if isinstance(value, list):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted(value, key=repr))
    return value


def matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == tuple(prefix)


@dataclass
class QueryEntry:
    key: QueryKey
    data: Any = MISSING
    updated_at: float = 0.0
    invalidated: bool = False
    fetcher: Fetcher | None = None
    fetch_task: asyncio.Task | None = None
    observers: list["QueryObserver"] = field(default_factory=list)
    last_accessed: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.data is not MISSING


@dataclass(frozen=True)
class PreviousState:
    """What one cache entry held before a mutation touched it."""

    key: QueryKey
    existed: bool
    data: Any = None
    updated_at: float = 0.0
    invalidated: bool = False


@dataclass(frozen=True)
class CacheSnapshot:
    states: tuple[PreviousState, ...]

    @property
    def keys(self) -> tuple[QueryKey, ...]:
        return tuple(state.key for state in self.states)

    def get(self, key: QueryKey) -> PreviousState | None:
        for state in self.states:
            if state.key == key:
                return state
        return None


class QueryObserver:
    """A mounted consumer of one cache entry."""

    def __init__(self, client: "QueryClient", entry: QueryEntry) -> None:
        self._client = client
        self._entry = entry
        self._listeners: list[Listener] = []
        self.mounted = True

    @property
    def key(self) -> QueryKey:
        return self._entry.key

    @property
    def data(self) -> Any:
        return None if self._entry.data is MISSING else self._entry.data

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception as e:
                logger.warning(f"Cache listener for {self.key} failed: {e}")

    async def refetch(self) -> Any:
        return await self._client.refetch_entry(self._entry)

    def unmount(self) -> None:
        if not self.mounted:
            return
        self.mounted = False
        self._listeners.clear()
        if self in self._entry.observers:
            self._entry.observers.remove(self)


class QueryClient:
    def __init__(
        self,
        *,
        stale_time: float = 300.0,
        gc_time: float = 24 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[QueryKey, QueryEntry] = {}
        self.stale_time = stale_time
        self.gc_time = gc_time
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry access
    # ------------------------------------------------------------------

    def _entry(self, key: QueryKey) -> QueryEntry:
        key = tuple(key)
        entry = self._entries.get(key)
        if entry is None:
            entry = QueryEntry(key=key, last_accessed=self._clock())
            self._entries[key] = entry
        return entry

    def find_keys(self, prefix: QueryKey) -> list[QueryKey]:
        return [key for key in self._entries if matches(key, prefix)]

    def _find(self, prefix: QueryKey) -> list[QueryEntry]:
        return [entry for key, entry in self._entries.items() if matches(key, prefix)]

    def has_query_data(self, key: QueryKey) -> bool:
        entry = self._entries.get(tuple(key))
        return entry is not None and entry.has_data

    def get_query_data(self, key: QueryKey) -> Any:
        entry = self._entries.get(tuple(key))
        if entry is None or not entry.has_data:
            return None
        return entry.data

    def is_invalidated(self, key: QueryKey) -> bool:
        entry = self._entries.get(tuple(key))
        return entry is not None and entry.invalidated

    def set_query_data(self, key: QueryKey, value: Any) -> Any:
        """Write data for ``key``. ``value`` may be an updater of the current data."""
        entry = self._entry(key)
        current = entry.data if entry.has_data else None
        new = value(current) if callable(value) else value
        if new is None:
            return current
        self._write(entry, new)
        return entry.data

    def update_query_data(self, key: QueryKey, updater: Updater) -> bool:
        """Apply ``updater`` only if the entry already holds data. Returns whether it did."""
        entry = self._entries.get(tuple(key))
        if entry is None or not entry.has_data:
            return False
        self._write(entry, updater(entry.data))
        return True

    def remove_queries(self, prefix: QueryKey) -> None:
        for entry in self._find(prefix):
            if entry.fetch_task is not None and not entry.fetch_task.done():
                entry.fetch_task.cancel()
            for observer in list(entry.observers):
                observer.unmount()
            del self._entries[entry.key]

    def _write(self, entry: QueryEntry, data: Any) -> None:
        entry.data = freeze(data)
        entry.updated_at = self._clock()
        entry.invalidated = False
        for observer in list(entry.observers):
            observer.notify(entry.data)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _is_stale(self, entry: QueryEntry, stale_time: float | None) -> bool:
        if not entry.has_data or entry.invalidated:
            return True
        limit = self.stale_time if stale_time is None else stale_time
        return self._clock() - entry.updated_at >= limit

    def _start_fetch(self, entry: QueryEntry, fetcher: Fetcher) -> asyncio.Task:
        async def runner() -> Any:
            data = await fetcher()
            self._write(entry, data)
            return entry.data

        task = asyncio.ensure_future(runner())
        entry.fetch_task = task

        def done(t: asyncio.Task) -> None:
            if entry.fetch_task is t:
                entry.fetch_task = None
            if not t.cancelled() and t.exception() is not None:
                logger.debug(f"Fetch for {entry.key} failed: {t.exception()}")

        task.add_done_callback(done)
        return task

    async def fetch_query(self, key: QueryKey, fetcher: Fetcher, *, stale_time: float | None = None) -> Any:
        """Return cached data for ``key`` or fetch it. Fetch errors propagate."""
        self.collect_garbage()
        entry = self._entry(key)
        entry.fetcher = fetcher
        entry.last_accessed = self._clock()
        if not self._is_stale(entry, stale_time):
            return entry.data

        while True:
            task = entry.fetch_task or self._start_fetch(entry, fetcher)
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not task.cancelled() or (current is not None and current.cancelling()):
                    raise
                # cancel_queries aborted the shared fetch
                if entry.has_data:
                    return entry.data

    async def ensure_query_data(self, key: QueryKey, fetcher: Fetcher) -> Any:
        """Like fetch_query, but any cached data counts as good enough."""
        entry = self._entries.get(tuple(key))
        if entry is not None and entry.has_data and not entry.invalidated:
            entry.last_accessed = self._clock()
            return entry.data
        return await self.fetch_query(key, fetcher)

    async def cancel_queries(self, prefix: QueryKey) -> None:
        """Abort in-flight fetches so they cannot overwrite a speculative write."""
        tasks = []
        for entry in self._find(prefix):
            task = entry.fetch_task
            if task is not None and not task.done():
                task.cancel()
                tasks.append(task)
                entry.fetch_task = None
        if tasks:
            await asyncio.wait(tasks)

    async def refetch_entry(self, entry: QueryEntry) -> Any:
        if entry.fetcher is None:
            return None if entry.data is MISSING else entry.data
        if entry.fetch_task is not None and not entry.fetch_task.done():
            entry.fetch_task.cancel()
        task = self._start_fetch(entry, entry.fetcher)
        return await asyncio.shield(task)

    async def _refetch_entries(self, entries: Iterable[QueryEntry]) -> None:
        entries = [e for e in entries if e.fetcher is not None]
        if not entries:
            return
        results = await asyncio.gather(*(self.refetch_entry(e) for e in entries), return_exceptions=True)
        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                error = CacheReconciliationError(f"Refetch of {entry.key} failed: {result!r}")
                logger.warning(f"[{error.code}] {error.message}")

    def mark_invalidated(self, prefix: QueryKey) -> list[QueryEntry]:
        entries = self._find(prefix)
        for entry in entries:
            entry.invalidated = True
        return entries

    async def invalidate_queries(self, prefix: QueryKey, *, refetch_active: bool = True) -> None:
        """Mark matching entries stale and refetch the mounted ones.

        Refetch errors are logged, never raised: the current data stays usable
        until the next natural refetch.
        """
        entries = self.mark_invalidated(prefix)
        if refetch_active:
            await self._refetch_entries(e for e in entries if e.observers)

    async def refetch_queries(self, prefix: QueryKey) -> None:
        await self._refetch_entries(self._find(prefix))

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    async def observe(self, key: QueryKey, fetcher: Fetcher) -> QueryObserver:
        """Mount a consumer on ``key`` and load its data."""
        entry = self._entry(key)
        entry.fetcher = fetcher
        observer = QueryObserver(self, entry)
        entry.observers.append(observer)
        try:
            await self.fetch_query(key, fetcher)
        except Exception:
            observer.unmount()
            raise
        return observer

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self, keys: Iterable[QueryKey]) -> CacheSnapshot:
        states = []
        for key in keys:
            key = tuple(key)
            entry = self._entries.get(key)
            if entry is None or not entry.has_data:
                states.append(PreviousState(key=key, existed=False))
            else:
                states.append(
                    PreviousState(
                        key=key,
                        existed=True,
                        data=entry.data,
                        updated_at=entry.updated_at,
                        invalidated=entry.invalidated,
                    )
                )
        return CacheSnapshot(states=tuple(states))

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Put every entry back exactly as snapshotted. Absent snapshots are skipped."""
        for state in snapshot.states:
            if not state.existed:
                continue
            entry = self._entry(state.key)
            entry.data = state.data
            entry.updated_at = state.updated_at
            entry.invalidated = state.invalidated
            for observer in list(entry.observers):
                observer.notify(entry.data)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def collect_garbage(self) -> int:
        """Drop idle entries not read for ``gc_time``. Returns how many were dropped."""
        now = self._clock()
        idle = [
            key
            for key, entry in self._entries.items()
            if not entry.observers
            and (entry.fetch_task is None or entry.fetch_task.done())
            and now - entry.last_accessed >= self.gc_time
        ]
        for key in idle:
            del self._entries[key]
        return len(idle)

    def clear(self) -> None:
        self.remove_queries(())
