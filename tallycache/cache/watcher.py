"""Reload the cache index when another process changes the directory store."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import watchfiles

from .backends import INDEX_FILE, DirectoryBackend
from .store import HybridCache

logger = logging.getLogger(__name__)


class CacheIndexWatcher:
    """Watches ``index.json`` under the cache root and reloads the index on change.

    Only meaningful for the directory backend; the record backend has no
    index file to watch.
    """

    def __init__(self, cache: HybridCache, debounce_ms: int = 500):
        if not isinstance(cache.backend, DirectoryBackend):
            raise ValueError("Index watching requires the directory backend")
        self.cache = cache
        self.root = cache.backend.root
        self.debounce_ms = debounce_ms
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _is_index(self, change: watchfiles.Change, path: str) -> bool:
        return Path(path).name == INDEX_FILE

    async def run(self) -> None:
        """Watch until ``stop`` is called."""
        self.root.mkdir(parents=True, exist_ok=True)
        logger.debug("Watching %s for index changes", self.root)
        async for changes in watchfiles.awatch(
            self.root,
            watch_filter=self._is_index,
            debounce=self.debounce_ms,
            stop_event=self._stop,
            recursive=False,
        ):
            logger.debug("Cache index changed on disk (%d events); reloading", len(changes))
            await self.cache.reload_index()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
