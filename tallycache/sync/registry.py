"""In-process bookkeeping for running syncs and their observers."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..models.sync import CompanyIdentity, SyncProgress, SyncResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], Any]


class SyncHandle:
    """A running (or finished) sync for one tenant."""

    def __init__(self, identity: CompanyIdentity):
        self.identity = identity
        self.progress = SyncProgress.idle(identity)
        self.task: Optional[asyncio.Task] = None
        self.cancel_requested = False

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def wait(self) -> SyncResult:
        """Wait for the sync to finish.

        Returns:
            The result; status is ``interrupted`` after ``cancel``

        Raises:
            SyncError, StorageError: the sync failed; progress carries the details
        """
        if self.task is None:
            raise RuntimeError(f"Sync for {self.identity} was never started")
        return await asyncio.shield(self.task)

    def __repr__(self) -> str:
        return f"SyncHandle({self.identity}, status={self.progress.status.value})"


class ActiveSyncRegistry:
    """At most one running sync per ``(location_id, guid)``.

    This registry lives in one process; other processes only see the
    durable checkpoint.
    """

    def __init__(self):
        self._handles: Dict[Tuple[str, str], SyncHandle] = {}
        self._order: List[Tuple[str, str]] = []

    def get(self, identity: CompanyIdentity) -> Optional[SyncHandle]:
        handle = self._handles.get(identity.tenant_key)
        if handle is not None and handle.running:
            return handle
        return None

    def is_running(self, identity: CompanyIdentity) -> bool:
        return self.get(identity) is not None

    def register(self, handle: SyncHandle) -> None:
        key = handle.identity.tenant_key
        if self.get(handle.identity) is not None:
            raise RuntimeError(f"A sync is already running for {handle.identity}")
        self._handles[key] = handle
        if key in self._order:
            self._order.remove(key)
        self._order.append(key)

    def unregister(self, handle: SyncHandle) -> None:
        key = handle.identity.tenant_key
        if self._handles.get(key) is handle:
            del self._handles[key]
            self._order.remove(key)

    def active(self) -> List[SyncHandle]:
        """Running handles, oldest first."""
        return [self._handles[key] for key in self._order if self._handles[key].running]

    def current(self) -> Optional[SyncHandle]:
        """The most recently started sync that is still running."""
        running = self.active()
        return running[-1] if running else None


class ProgressBroadcaster:
    """Fans progress snapshots out to subscribers in registration order.

    A failing subscriber is logged and skipped; it never affects the sync or
    the other subscribers. Each subscriber gets its own copy of the snapshot.
    """

    def __init__(self):
        self._subscribers: List[ProgressCallback] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, progress: SyncProgress) -> None:
        for callback in list(self._subscribers):
            self.deliver(callback, progress)

    def deliver(self, callback: ProgressCallback, progress: SyncProgress) -> None:
        try:
            result = callback(progress.model_copy(deep=True))
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        except Exception as e:
            logger.warning("Progress subscriber %r failed: %s", callback, e)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Progress subscriber task failed: %s", task.exception())
