"""Sync orchestration: single-flight, resumable chunked downloads per company.

A full download tiles ``[books_from, today]`` into windows and fetches them in
order. Each window is stored as its own sales entry and followed by a
checkpoint, so an interrupted download resumes at the first window that was
not stored. When every window is in, they are merged into one complete entry
and the staged windows are removed.

Later syncs are incremental: one request for records altered after the stored
watermark, merged into the complete entry.
"""

import asyncio
import json
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from ..cache.keys import customers_key, items_key, sales_complete_key, sales_window_key
from ..cache.progress import CheckpointStore
from ..cache.store import HybridCache
from ..errors import RemoteNotFoundError
from ..models.cache import CacheType, DateRange
from ..models.sync import (
    CompanyIdentity,
    DownloadCheckpoint,
    SyncProgress,
    SyncResult,
    SyncStatus,
)
from .fetcher import SalesFetcher
from .registry import ActiveSyncRegistry, ProgressBroadcaster, ProgressCallback, SyncHandle
from .vouchers import max_alter_id, merge_vouchers
from .windows import DEFAULT_CHUNK_DAYS, count_windows, iter_windows

logger = logging.getLogger(__name__)

WATERMARK_PREFIX = "watermark"


class SyncOrchestrator:
    """Drives sales, customer and stock item downloads for any number of companies."""

    def __init__(
        self,
        cache: HybridCache,
        fetcher: SalesFetcher,
        checkpoints: Optional[CheckpointStore] = None,
        registry: Optional[ActiveSyncRegistry] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        chunk_days: int = DEFAULT_CHUNK_DAYS,
        default_books_from: Optional[date] = None,
        today: Callable[[], date] = date.today,
    ):
        """Initialize the orchestrator.

        Args:
            cache: Cache for datasets and checkpoints
            fetcher: Remote data fetcher
            checkpoints: Checkpoint store; built on ``cache`` when None
            registry: Running sync registry
            broadcaster: Progress fan-out
            chunk_days: Days per window
            default_books_from: Origin date when neither the caller nor the server provides one
            today: Clock for the end of the download range
        """
        self.cache = cache
        self.fetcher = fetcher
        self.checkpoints = checkpoints or CheckpointStore(cache)
        self.registry = registry or ActiveSyncRegistry()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.chunk_days = chunk_days
        self.default_books_from = default_books_from
        self.today = today
        self._finished: Dict[tuple, SyncProgress] = {}

    # === Public API ===

    async def start_or_resume(
        self,
        identity: CompanyIdentity,
        start_fresh: bool = False,
        books_from: Optional[date] = None,
    ) -> SyncHandle:
        """Start a sales sync, or join the one already running for this company.

        Args:
            identity: Company to sync
            start_fresh: Discard the checkpoint and watermark and download everything again
            books_from: First day of the company's books; looked up when None

        Returns:
            Handle of the running sync
        """
        existing = self.registry.get(identity)
        if existing is not None:
            logger.debug("Sync already running for %s; joining it", identity)
            return existing

        # No await between the check above and registration below
        handle = SyncHandle(identity)
        handle.progress = handle.progress.model_copy(
            update={
                "status": SyncStatus.RUNNING,
                "started_at": datetime.now(),
                "last_updated_at": datetime.now(),
                "message": "Preparing download",
            }
        )
        handle.task = asyncio.create_task(self._run(handle, start_fresh, books_from))
        self.registry.register(handle)
        self._finished.pop(identity.tenant_key, None)
        self.broadcaster.publish(handle.progress)
        return handle

    async def get_progress(self, identity: CompanyIdentity) -> SyncProgress:
        """Live snapshot, else last outcome, else interrupted checkpoint, else completion, else idle."""
        handle = self.registry.get(identity)
        if handle is not None:
            return handle.progress.model_copy(deep=True)

        finished = self._finished.get(identity.tenant_key)
        if finished is not None:
            return finished.model_copy(deep=True)

        checkpoint = await self.checkpoints.read_checkpoint(identity)
        if checkpoint is not None and checkpoint.is_incomplete:
            return SyncProgress.idle(identity).model_copy(
                update={
                    "status": SyncStatus.INTERRUPTED,
                    "current_chunk": checkpoint.current,
                    "total_chunks": checkpoint.total,
                    "record_count": checkpoint.record_count,
                    "last_updated_at": checkpoint.timestamp,
                    "message": f"Interrupted after {checkpoint.current} of {checkpoint.total} chunks",
                }
            )

        watermark = await self._read_watermark(identity)
        if watermark is not None:
            completed_at = watermark.get("completed_at")
            return SyncProgress.idle(identity).model_copy(
                update={
                    "status": SyncStatus.COMPLETED,
                    "record_count": watermark.get("record_count", 0),
                    "last_updated_at": datetime.fromisoformat(completed_at) if completed_at else datetime.now(),
                    "message": "Up to date",
                }
            )

        return SyncProgress.idle(identity)

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Receive every progress update; running syncs are replayed to the new subscriber."""
        unsubscribe = self.broadcaster.subscribe(callback)
        for handle in self.registry.active():
            self.broadcaster.deliver(callback, handle.progress)
        return unsubscribe

    def is_sync_in_progress(self, identity: Optional[CompanyIdentity] = None) -> bool:
        if identity is None:
            return bool(self.registry.active())
        return self.registry.is_running(identity)

    def is_same_company(self, identity: CompanyIdentity) -> bool:
        """Whether the most recently started running sync belongs to ``identity``."""
        current = self.registry.current()
        return current is not None and current.identity.same_tenant(identity)

    def cancel(self, identity: CompanyIdentity) -> bool:
        """Ask a running sync to stop before its next chunk.

        Returns:
            False when no sync is running for ``identity``
        """
        handle = self.registry.get(identity)
        if handle is None:
            return False
        handle.cancel_requested = True
        logger.info("Cancellation requested for %s", identity)
        return True

    async def detect_interrupted(self, identity: CompanyIdentity) -> Optional[DownloadCheckpoint]:
        return await self.checkpoints.detect_interrupted(identity, self.registry)

    async def sync_customers(self, identity: CompanyIdentity) -> int:
        """Download the customer ledger list. Returns the number of ledgers stored."""
        ledgers = await self.fetcher.fetch_customers(identity)
        await self.cache.set(customers_key(identity), {"ledgers": ledgers}, entry_type=CacheType.CUSTOMERS)
        logger.info("Stored %d ledgers for %s", len(ledgers), identity)
        return len(ledgers)

    async def sync_items(self, identity: CompanyIdentity) -> int:
        """Download the stock item list. Returns the number of items stored."""
        items = await self.fetcher.fetch_items(identity)
        await self.cache.set(items_key(identity), {"stockItems": items}, entry_type=CacheType.ITEMS)
        logger.info("Stored %d stock items for %s", len(items), identity)
        return len(items)

    async def close(self) -> None:
        """Cancel running syncs and close the HTTP client."""
        tasks = [handle.task for handle in self.registry.active()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.fetcher.client.close()

    # === Progress ===

    def _update(self, handle: SyncHandle, **changes: Any) -> None:
        changes["last_updated_at"] = datetime.now()
        handle.progress = handle.progress.model_copy(update=changes)
        self.broadcaster.publish(handle.progress)

    def _finish(self, handle: SyncHandle, **changes: Any) -> None:
        """Unregister first so subscribers see no running sync in the final snapshot."""
        self.registry.unregister(handle)
        changes["last_updated_at"] = datetime.now()
        handle.progress = handle.progress.model_copy(update=changes)
        self._finished[handle.identity.tenant_key] = handle.progress
        self.broadcaster.publish(handle.progress)

    # === Watermark ===

    def _watermark_key(self, identity: CompanyIdentity) -> str:
        return f"{WATERMARK_PREFIX}:{identity.location_id}|{identity.guid}"

    async def _read_watermark(self, identity: CompanyIdentity) -> Optional[Dict[str, Any]]:
        """Completion record of the last full or incremental sync.

        Only valid while the complete dataset it describes is still cached.
        """
        await self.cache.open()
        if sales_complete_key(identity) not in self.cache:
            return None
        raw = await asyncio.to_thread(self.cache.records.meta_get, self._watermark_key(identity))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable watermark for %s", identity)
            return None

    async def _write_watermark(self, identity: CompanyIdentity, record: Dict[str, Any]) -> None:
        await asyncio.to_thread(
            self.cache.records.meta_set, self._watermark_key(identity), json.dumps(record)
        )

    async def _discard_watermark(self, identity: CompanyIdentity) -> None:
        await asyncio.to_thread(self.cache.records.meta_delete, self._watermark_key(identity))

    # === Sync flow ===

    async def _run(self, handle: SyncHandle, start_fresh: bool, books_from: Optional[date]) -> SyncResult:
        identity = handle.identity
        logger.info("Sync started for %s%s", identity, " (fresh)" if start_fresh else "")
        try:
            result = await self._sync_sales(handle, start_fresh, books_from)
        except asyncio.CancelledError:
            self._finish(handle, status=SyncStatus.INTERRUPTED, message="Sync stopped")
            raise
        except Exception as e:
            remediation = getattr(e, "remediation", None)
            logger.error("Sync failed for %s: %s", identity, e)
            self._finish(
                handle,
                status=SyncStatus.FAILED,
                error=str(e),
                remediation=remediation,
                message=f"Sync failed: {e}",
            )
            raise

        if result.status == SyncStatus.INTERRUPTED:
            self._finish(handle, status=SyncStatus.INTERRUPTED, message="Sync paused; resume to continue")
        else:
            self._finish(
                handle,
                status=SyncStatus.COMPLETED,
                record_count=result.record_count,
                message=f"Synced {result.record_count} vouchers",
            )
        logger.info("Sync %s for %s: %d vouchers", result.status.value, identity, result.record_count)
        return result

    async def _resolve_books_from(self, identity: CompanyIdentity, books_from: Optional[date]) -> date:
        if books_from is not None:
            return books_from
        if self.default_books_from is not None:
            return self.default_books_from
        found = await self.fetcher.fetch_books_from(identity)
        if found is None:
            raise RemoteNotFoundError(
                f"Unable to find the books-from date for {identity}. "
                "Check that you have access to this company."
            )
        return found

    async def _sync_sales(self, handle: SyncHandle, start_fresh: bool, books_from: Optional[date]) -> SyncResult:
        identity = handle.identity

        if start_fresh:
            await self.checkpoints.clear_checkpoint(identity)
            await self._discard_watermark(identity)
            await self._discard_staged(identity)
        else:
            checkpoint = await self.checkpoints.read_checkpoint(identity)
            if checkpoint is not None and checkpoint.total > 0:
                if checkpoint.from_date is not None and checkpoint.to_date is not None:
                    logger.info(
                        "Resuming %s at chunk %d of %d", identity, checkpoint.current + 1, checkpoint.total
                    )
                    return await self._run_chunks(
                        handle,
                        checkpoint.from_date,
                        checkpoint.to_date,
                        start_index=checkpoint.current,
                        last_alter_id=checkpoint.last_alter_id,
                        record_count=checkpoint.record_count,
                        since_alter_id=checkpoint.since_alter_id,
                    )
                logger.warning("Checkpoint for %s has no date range; starting over", identity)
                await self.checkpoints.clear_checkpoint(identity)

        from_date = await self._resolve_books_from(identity, books_from)
        to_date = max(self.today(), from_date)

        watermark = None if start_fresh else await self._read_watermark(identity)
        since = watermark.get("last_alter_id") if watermark else None
        if since is not None:
            return await self._run_update(handle, from_date, to_date, since)

        total = count_windows(from_date, to_date, self.chunk_days)
        await self.checkpoints.write_checkpoint(identity, 0, total, None, from_date, to_date, 0)
        return await self._run_chunks(handle, from_date, to_date, start_index=0)

    async def _run_update(self, handle: SyncHandle, from_date: date, to_date: date, since: int) -> SyncResult:
        identity = handle.identity
        self._update(handle, current_chunk=0, total_chunks=1, message="Checking for updates")
        result = await self.fetcher.fetch_updates(identity, from_date, to_date, since)

        if result.needs_slice:
            total = count_windows(from_date, to_date, self.chunk_days)
            await self.checkpoints.write_checkpoint(
                identity, 0, total, since, from_date, to_date, 0, since_alter_id=since
            )
            return await self._run_chunks(
                handle, from_date, to_date, start_index=0, last_alter_id=since, since_alter_id=since
            )

        self._update(handle, current_chunk=1, message=f"Merging {len(result.vouchers)} updated vouchers")
        return await self._store_complete(
            identity, from_date, to_date, result.vouchers, since, chunks_fetched=1
        )

    async def _run_chunks(
        self,
        handle: SyncHandle,
        from_date: date,
        to_date: date,
        start_index: int,
        last_alter_id: Optional[int] = None,
        record_count: int = 0,
        since_alter_id: Optional[int] = None,
    ) -> SyncResult:
        identity = handle.identity
        total = count_windows(from_date, to_date, self.chunk_days)
        fetched = 0
        self._update(
            handle,
            current_chunk=start_index,
            total_chunks=total,
            record_count=record_count,
            message=f"Resuming from chunk {start_index + 1} of {total}" if start_index else "Downloading",
        )

        for window in iter_windows(from_date, to_date, self.chunk_days, start_index):
            if handle.cancel_requested:
                logger.info("Sync for %s stopped before chunk %d", identity, window.index + 1)
                return SyncResult(
                    status=SyncStatus.INTERRUPTED,
                    record_count=record_count,
                    last_alter_id=last_alter_id,
                    chunks_fetched=fetched,
                    incremental=since_alter_id is not None,
                )

            self._update(
                handle,
                window_label=window.label,
                message=f"Chunk {window.index + 1} of {total}: {window.label}",
            )
            # A failure here aborts the loop; the checkpoint still points at this window
            vouchers = await self.fetcher.fetch_window(identity, window, since_alter_id)
            await self.cache.set(
                sales_window_key(identity, window.start, window.end),
                {"vouchers": vouchers},
                date_range=DateRange(start_date=window.start, end_date=window.end),
                entry_type=CacheType.SALES,
            )

            fetched += 1
            record_count += len(vouchers)
            last_alter_id = max_alter_id(vouchers, last_alter_id)
            await self.checkpoints.write_checkpoint(
                identity,
                window.index + 1,
                total,
                last_alter_id,
                from_date,
                to_date,
                record_count,
                since_alter_id=since_alter_id,
            )
            self._update(handle, current_chunk=window.index + 1, record_count=record_count)

        vouchers = await self._collect_staged(identity, from_date, to_date, since_alter_id)
        return await self._store_complete(
            identity, from_date, to_date, vouchers, since_alter_id, chunks_fetched=fetched
        )

    async def _collect_staged(
        self,
        identity: CompanyIdentity,
        from_date: date,
        to_date: date,
        since_alter_id: Optional[int],
    ) -> List[Dict[str, Any]]:
        """Concatenate the staged windows in order, refetching any that went missing."""
        vouchers: List[Dict[str, Any]] = []
        for window in iter_windows(from_date, to_date, self.chunk_days):
            key = sales_window_key(identity, window.start, window.end)
            staged = await self.cache.get_json(key)
            if staged is None:
                logger.info("Staged window %s missing for %s; fetching it again", window.label, identity)
                vouchers.extend(await self.fetcher.fetch_window(identity, window, since_alter_id))
                continue
            vouchers.extend(staged.get("vouchers") or [])
        return vouchers

    async def _store_complete(
        self,
        identity: CompanyIdentity,
        from_date: date,
        to_date: date,
        vouchers: List[Dict[str, Any]],
        since_alter_id: Optional[int],
        chunks_fetched: int,
    ) -> SyncResult:
        """Write the complete dataset, then drop the staged windows and the checkpoint."""
        complete_key = sales_complete_key(identity)
        incremental = since_alter_id is not None
        range_start = from_date

        if incremental:
            existing = await self.cache.get_json(complete_key) or {}
            existing_vouchers = existing.get("vouchers") or []
            previous_start = (existing.get("metadata") or {}).get("from_date")
            if previous_start:
                range_start = min(from_date, date.fromisoformat(previous_start))
            if not existing_vouchers:
                logger.warning("Update for %s found no stored vouchers; keeping the new ones only", identity)
            merged = merge_vouchers(existing_vouchers, vouchers)
            logger.info(
                "Merged %d new vouchers into %d existing for %s",
                len(merged) - len(existing_vouchers),
                len(existing_vouchers),
                identity,
            )
        else:
            merged = vouchers

        watermark = max_alter_id(merged, since_alter_id)
        completed_at = datetime.now()
        metadata = {
            "last_alter_id": watermark,
            "from_date": range_start.isoformat(),
            "to_date": to_date.isoformat(),
            "record_count": len(merged),
            "completed_at": completed_at.isoformat(),
        }
        await self.cache.set(
            complete_key,
            {"vouchers": merged, "metadata": metadata},
            date_range=DateRange(start_date=range_start, end_date=to_date),
            entry_type=CacheType.SALES,
        )
        await self._write_watermark(identity, metadata)
        await self._discard_staged(identity)
        await self.checkpoints.clear_checkpoint(identity)

        return SyncResult(
            status=SyncStatus.COMPLETED,
            record_count=len(merged),
            last_alter_id=watermark,
            chunks_fetched=chunks_fetched,
            incremental=incremental,
        )

    async def _discard_staged(self, identity: CompanyIdentity) -> None:
        await self.cache.open()
        listing = await self.cache.list_all()
        prefix = f"sales_{identity.location_id}_{identity.guid}_"
        complete_key = sales_complete_key(identity)
        for entry in listing.entries:
            if entry.cache_key.startswith(prefix) and entry.cache_key != complete_key:
                await self.cache.delete(entry.cache_key)
