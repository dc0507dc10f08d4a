"""Hybrid cache: the async key/value API over the physical backends.

``HybridCache`` keeps an in-memory metadata index that is updated at every
mutation site, so listings and range lookups never re-scan storage. Payloads
go through the codec on the way in and out. Keys missing from the primary
backend are looked up in the old flat store before a miss is reported.
"""

import asyncio
import inspect
import logging
import shutil
import weakref
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Union

from ..errors import CacheMissError, CorruptedEntryError, PayloadIntegrityError
from ..models.cache import (
    CacheChange,
    CacheEntry,
    CacheListing,
    CacheType,
    ChangeKind,
    DateRange,
    RangeCoverage,
)
from ..models.sync import CompanyIdentity
from ..sync.windows import range_gaps
from . import codec
from .backends import RecordBackend, StorageBackend, select_backend
from .keys import belongs_to_company, company_keys, infer_type, legacy_base, parse_window
from .legacy import LegacyChunkReader
from .records import RecordStore

logger = logging.getLogger(__name__)

CacheListener = Callable[[CacheChange], Any]


class HybridCache:
    """Async cache facade over a directory or DuckDB record backend."""

    def __init__(
        self,
        backend: StorageBackend,
        records: RecordStore,
        expiry_days: Union[int, str] = "never",
        read_retry_delay: float = 0.05,
        low_space_percent: int = 90,
    ):
        """Initialize the cache.

        Args:
            backend: Primary storage backend
            records: Record database, also holding the legacy flat store
            expiry_days: Default age limit for ``expire_stale``; 0 or "never" disables it
            read_retry_delay: Seconds to wait before the single read retry
            low_space_percent: Volume usage at which ``storage_stats`` reports low space
        """
        self.backend = backend
        self.records = records
        self.legacy = LegacyChunkReader(records)
        self.expiry_days = expiry_days
        self.read_retry_delay = read_retry_delay
        self.low_space_percent = low_space_percent

        self._index: Dict[str, CacheEntry] = {}
        self._loaded = False
        # Entries vanish once no coroutine holds or waits on the lock
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._bulk_lock = asyncio.Lock()
        self._gate = asyncio.Condition()
        self._bulk_active = False
        self._active_ops = 0
        self._listeners: List[CacheListener] = []
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, cache_config) -> "HybridCache":
        """Build a cache from the ``[cache]`` config section."""
        records = RecordStore(cache_config.db_path)
        backend = select_backend(cache_config.backend, cache_config.root_dir, records)
        return cls(
            backend,
            records,
            expiry_days=cache_config.expiry_days,
            read_retry_delay=cache_config.read_retry_delay_ms / 1000,
            low_space_percent=cache_config.low_space_percent,
        )

    async def open(self) -> "HybridCache":
        """Load the metadata index from the backend."""
        if not self._loaded:
            self._index = await asyncio.to_thread(self.backend.load_index)
            self._loaded = True
            logger.debug("Loaded %d index entries from %s backend", len(self._index), self.backend.name)
        return self

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.to_thread(self.records.close)

    async def __aenter__(self) -> "HybridCache":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # === Locking ===

    @asynccontextmanager
    async def _mutating(self, key: str) -> AsyncIterator[None]:
        """Hold the per-key lock, waiting out any bulk clear in progress."""
        async with self._gate:
            await self._gate.wait_for(lambda: not self._bulk_active)
            self._active_ops += 1
        try:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[key] = lock
            async with lock:
                yield
        finally:
            async with self._gate:
                self._active_ops -= 1
                self._gate.notify_all()

    @asynccontextmanager
    async def _bulk(self) -> AsyncIterator[None]:
        """Exclusive access for bulk operations; drains in-flight key mutations first."""
        async with self._bulk_lock:
            async with self._gate:
                self._bulk_active = True
                await self._gate.wait_for(lambda: self._active_ops == 0)
            try:
                yield
            finally:
                async with self._gate:
                    self._bulk_active = False
                    self._gate.notify_all()

    # === Listeners ===

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """Register a change listener.

        Listeners are called in registration order after every mutation.
        Coroutine listeners are scheduled as tasks.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, kind: ChangeKind, keys: List[str]) -> None:
        change = CacheChange(kind=kind, keys=keys)
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                logger.warning("Cache listener %r failed: %s", listener, e)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Cache listener task failed: %s", task.exception())

    # === Reads ===

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._index.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._index

    async def get(self, key: str) -> bytes:
        """Return the stored bytes for ``key``.

        Raises:
            CacheMissError: the key is in neither the primary nor the legacy store
            PayloadIntegrityError: a legacy value is missing fragments
        """
        await self.open()
        data = await asyncio.to_thread(self.backend.read, key)
        if data is None and key in self._index:
            # Indexed but not yet visible: one retry for the read-after-write race
            await asyncio.sleep(self.read_retry_delay)
            data = await asyncio.to_thread(self.backend.read, key)
        if data is not None:
            return data

        raw = await asyncio.to_thread(self.legacy.read_raw, key)
        if raw is not None:
            logger.debug("Served %s from legacy flat store", key)
            return raw.encode("utf-8")
        raise CacheMissError(key)

    async def get_as_json(self, key: str) -> Any:
        """Return the decoded value for ``key``.

        A value that fails to decode is deleted before the error is raised.

        Raises:
            CacheMissError: nothing stored under ``key``
            CorruptedEntryError: the value was corrupted and has been removed
        """
        try:
            data = await self.get(key)
            return codec.decode(data)
        except PayloadIntegrityError as e:
            logger.warning("Removing corrupted cache entry %s: %s", key, e)
            await self.delete(key)
            raise CorruptedEntryError(key, str(e)) from e

    async def get_json(self, key: str) -> Any:
        """Like ``get_as_json`` but returns None on a miss."""
        try:
            return await self.get_as_json(key)
        except CacheMissError:
            return None

    # === Writes ===

    async def set(
        self,
        key: str,
        payload: Any,
        date_range: Optional[DateRange] = None,
        entry_type: Optional[CacheType] = None,
    ) -> CacheEntry:
        """Store ``payload`` under ``key``, replacing any previous value.

        Args:
            key: Cache key
            payload: JSON-serialisable value
            date_range: Range covered by the payload; parsed from the key when omitted
            entry_type: Dataset category; inferred from the key prefix when omitted

        Returns:
            The new index entry
        """
        await self.open()
        data = codec.encode(payload)
        if date_range is None:
            window = parse_window(key)
            if window is not None:
                date_range = DateRange(start_date=window[0], end_date=window[1])
        entry = CacheEntry(
            cache_key=key,
            type=entry_type or infer_type(key),
            size_bytes=len(data),
            created_at=datetime.now(),
            date_range=date_range,
            backend=self.backend.name,
        )

        async with self._mutating(key):
            await asyncio.to_thread(self.backend.write, entry, data)
            self._index[key] = entry
        logger.debug("Stored %s (%d bytes)", key, len(data))
        self._publish(ChangeKind.SET, [key])
        return entry

    async def delete(self, key: str) -> None:
        """Remove ``key`` from the backend, the index and the legacy store. Idempotent."""
        await self.open()
        async with self._mutating(key):
            await asyncio.to_thread(self._remove_everywhere, key)
            self._index.pop(key, None)
        self._publish(ChangeKind.DELETE, [key])

    def _remove_everywhere(self, key: str) -> None:
        self.backend.remove(key)
        self.legacy.remove(key)

    # === Bulk operations ===

    async def list_all(self) -> CacheListing:
        """Summarize the cache from the metadata index, newest first.

        Values that live only in the legacy flat store are readable through
        ``get`` but are not listed or counted here.
        """
        await self.open()
        entries = sorted(self._index.values(), key=lambda e: e.created_at, reverse=True)
        counts: Dict[str, int] = {}
        for entry in entries:
            counts[entry.type.value] = counts.get(entry.type.value, 0) + 1
        return CacheListing(
            total_entries=len(entries),
            total_size_bytes=sum(e.size_bytes for e in entries),
            counts_by_type=counts,
            entries=entries,
        )

    async def clear_all(self) -> None:
        """Delete everything, including legacy values."""
        await self.open()
        async with self._bulk():
            keys = list(self._index)
            await asyncio.to_thread(self._clear_storage)
            self._index = {}
        logger.info("Cleared %d cache entries", len(keys))
        self._publish(ChangeKind.CLEAR, keys)

    def _clear_storage(self) -> None:
        self.backend.clear()
        # The record backend clears the flat store along with its own table
        if not isinstance(self.backend, RecordBackend):
            self.records.clear_records()

    async def clear_by_company(self, identity: CompanyIdentity) -> List[str]:
        """Delete every key owned by one tenant, including its checkpoint.

        Returns:
            Keys removed from the primary store
        """
        await self.open()
        async with self._bulk():
            keys = [k for k in self._index if belongs_to_company(k, identity)]
            for key in company_keys(identity):
                if key not in keys:
                    keys.append(key)
            await asyncio.to_thread(self._clear_company_storage, keys, identity)
            removed = [k for k in keys if self._index.pop(k, None) is not None]
        logger.info("Cleared %d cache entries for %s", len(removed), identity)
        self._publish(ChangeKind.CLEAR, removed)
        return removed

    def _clear_company_storage(self, keys: List[str], identity: CompanyIdentity) -> None:
        for key in keys:
            self.backend.remove(key)
        legacy_keys = [
            k for k in self.records.flat_keys() if belongs_to_company(legacy_base(k), identity)
        ]
        self.records.flat_delete(legacy_keys)

    async def expire_stale(self, max_age_days: Optional[Union[int, str]] = None) -> List[str]:
        """Delete entries older than the age limit.

        Checkpoints (session entries) are kept so an interrupted download can
        still resume.

        Args:
            max_age_days: Age limit in days; the configured value when None

        Returns:
            Keys that were removed
        """
        await self.open()
        limit = self.expiry_days if max_age_days is None else max_age_days
        if limit in ("never", None) or int(limit) <= 0:
            return []

        cutoff = datetime.now() - timedelta(days=int(limit))
        stale = [
            key
            for key, entry in self._index.items()
            if entry.created_at < cutoff and entry.type != CacheType.SESSION
        ]
        for key in stale:
            await self.delete(key)
        if stale:
            logger.info("Expired %d cache entries older than %s days", len(stale), limit)
        return stale

    async def reload_index(self) -> None:
        """Re-read the metadata index after another process changed the store."""
        async with self._bulk():
            self._index = await asyncio.to_thread(self.backend.load_index)
            self._loaded = True
        self._publish(ChangeKind.RELOAD, [])

    # === Queries ===

    async def find_cached_ranges(
        self,
        base_key: str,
        start: date,
        end: date,
        max_age_days: Optional[int] = None,
    ) -> RangeCoverage:
        """Find cached windows under ``base_key`` overlapping ``[start, end]``.

        Args:
            base_key: Key prefix without the date window
            start: First requested day
            end: Last requested day
            max_age_days: Ignore entries older than this; the configured expiry when None

        Returns:
            Overlapping windows clipped to the request, their keys and the uncovered gaps
        """
        await self.open()
        requested = DateRange(start_date=start, end_date=end)
        limit = self.expiry_days if max_age_days is None else max_age_days
        cutoff = None
        if limit not in ("never", None) and int(limit) > 0:
            cutoff = datetime.now() - timedelta(days=int(limit))

        matches = []
        for key, entry in self._index.items():
            if not key.startswith(base_key + "_") or entry.date_range is None:
                continue
            if cutoff is not None and entry.created_at < cutoff:
                continue
            if entry.date_range.overlaps(requested):
                matches.append((entry.date_range.start_date, key, entry.date_range))
        matches.sort(key=lambda m: m[0])

        cached = [
            DateRange(
                start_date=max(r.start_date, requested.start_date),
                end_date=min(r.end_date, requested.end_date),
            )
            for _, _, r in matches
        ]
        return RangeCoverage(
            requested=requested,
            cached=cached,
            cached_keys=[key for _, key, _ in matches],
            gaps=range_gaps(requested, cached),
        )

    def _stats_path(self) -> Path:
        path = Path(self.backend.location)
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    async def storage_stats(self) -> Dict[str, Any]:
        """Backend, location, bytes used and free disk space of the cache volume."""
        await self.open()
        used = await asyncio.to_thread(self.backend.used_bytes)
        usage = await asyncio.to_thread(shutil.disk_usage, self._stats_path())
        usage_percent = round(usage.used * 100 / usage.total, 2) if usage.total else 0.0
        return {
            "backend": self.backend.name,
            "location": self.backend.location,
            "entries": len(self._index),
            "used_bytes": used,
            "disk_total_bytes": usage.total,
            "disk_free_bytes": usage.free,
            "usage_percent": usage_percent,
            "low_space": usage_percent >= self.low_space_percent,
        }
