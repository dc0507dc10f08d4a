"""Download checkpoints for resume after interruption.

A checkpoint is written after every chunk that has been stored, so a crash or
restart loses at most the chunk that was in flight. On startup a checkpoint
with ``current < total`` and no running sync means the previous attempt was
interrupted.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from pydantic import ValidationError

from ..errors import CorruptedEntryError
from ..models.cache import CacheType
from ..models.sync import CompanyIdentity, DownloadCheckpoint
from .keys import checkpoint_key
from .store import HybridCache

logger = logging.getLogger(__name__)

DISMISSED_PREFIX = "dismissed_interrupt"


class CheckpointStore:
    """Reads and writes per-tenant download checkpoints."""

    def __init__(self, cache: HybridCache):
        """Initialize checkpoint store.

        Args:
            cache: Cache holding the checkpoints; dismissals go to its record database
        """
        self.cache = cache

    async def write_checkpoint(
        self,
        identity: CompanyIdentity,
        current: int,
        total: int,
        last_alter_id: Optional[int] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        record_count: int = 0,
        since_alter_id: Optional[int] = None,
    ) -> DownloadCheckpoint:
        """Persist progress after a chunk has been stored.

        Args:
            identity: Tenant being downloaded
            current: Number of chunks completed
            total: Total chunks in the range
            last_alter_id: Highest alteration id seen so far
            from_date: First day of the range being tiled
            to_date: Last day of the range being tiled
            record_count: Vouchers fetched so far
            since_alter_id: Watermark of a chunked update pass

        Returns:
            The stored checkpoint

        Raises:
            ValueError: ``current`` exceeds ``total`` or moves backwards
        """
        # The stored checkpoint is authoritative; clears may remove it at any time
        previous = await self.read_checkpoint(identity)
        if previous is not None and previous.total == total and current < previous.current:
            raise ValueError(
                f"Checkpoint for {identity} cannot move back from {previous.current} to {current}"
            )

        checkpoint = DownloadCheckpoint(
            company_guid=identity.guid,
            location_id=identity.location_id,
            current=current,
            total=total,
            timestamp=datetime.now(),
            last_alter_id=last_alter_id,
            since_alter_id=since_alter_id,
            from_date=from_date,
            to_date=to_date,
            record_count=record_count,
        )
        await self.cache.set(
            checkpoint_key(identity),
            checkpoint.model_dump(mode="json"),
            entry_type=CacheType.SESSION,
        )
        logger.debug("Checkpoint %s: %d/%d", identity, current, total)
        return checkpoint

    async def read_checkpoint(self, identity: CompanyIdentity) -> Optional[DownloadCheckpoint]:
        """Return the stored checkpoint, or None when there is none or it was unreadable."""
        key = checkpoint_key(identity)
        try:
            raw = await self.cache.get_json(key)
        except CorruptedEntryError as e:
            logger.warning("Discarded unreadable checkpoint for %s: %s", identity, e.reason)
            return None
        if raw is None:
            return None
        try:
            checkpoint = DownloadCheckpoint(**raw)
        except (TypeError, ValidationError) as e:
            logger.warning("Discarded invalid checkpoint for %s: %s", identity, e)
            await self.cache.delete(key)
            return None
        return checkpoint

    async def clear_checkpoint(self, identity: CompanyIdentity) -> None:
        await self.cache.delete(checkpoint_key(identity))

    # === Interruption detection ===

    async def detect_interrupted(self, identity: CompanyIdentity, registry) -> Optional[DownloadCheckpoint]:
        """Return the checkpoint of an interrupted download, if any.

        Args:
            identity: Tenant to check
            registry: Active sync registry; a running sync is not an interruption

        Returns:
            The incomplete checkpoint, or None when there is nothing to prompt
            about (no checkpoint, complete, running, or already dismissed)
        """
        if registry is not None and registry.is_running(identity):
            return None
        checkpoint = await self.read_checkpoint(identity)
        if checkpoint is None or not checkpoint.is_incomplete:
            return None
        if await self.is_dismissed(identity, checkpoint):
            logger.debug("Interruption for %s at %s was dismissed", identity, checkpoint.signature)
            return None
        return checkpoint

    async def scan_interrupted(
        self, identities: List[CompanyIdentity], registry
    ) -> List[Tuple[CompanyIdentity, DownloadCheckpoint]]:
        """Run ``detect_interrupted`` for several tenants."""
        found = []
        for identity in identities:
            checkpoint = await self.detect_interrupted(identity, registry)
            if checkpoint is not None:
                found.append((identity, checkpoint))
        return found

    def _dismiss_key(self, identity: CompanyIdentity) -> str:
        return f"{DISMISSED_PREFIX}:{identity.location_id}|{identity.guid}"

    async def dismiss(self, identity: CompanyIdentity, checkpoint: DownloadCheckpoint) -> None:
        """Stop prompting about this exact checkpoint state.

        A later checkpoint with different counts is reported again.
        """
        await asyncio.to_thread(
            self.cache.records.meta_set, self._dismiss_key(identity), checkpoint.signature
        )
        logger.info("Dismissed interruption prompt for %s at %d/%d", identity, checkpoint.current, checkpoint.total)

    async def is_dismissed(self, identity: CompanyIdentity, checkpoint: DownloadCheckpoint) -> bool:
        stored = await asyncio.to_thread(self.cache.records.meta_get, self._dismiss_key(identity))
        return stored == checkpoint.signature
