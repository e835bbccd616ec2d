"""
Background sync worker.

Request handlers submit sync requests and return immediately; one worker
task drains the queue so syncs never overlap within the process. A
request arriving while another is still waiting is coalesced into it.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from glucose_sync.models.sync import SyncRequest, SyncTrigger

logger = logging.getLogger(__name__)

SyncRunner = Callable[[SyncRequest], Awaitable[Any]]


class SyncWorker:
    """Single-consumer queue of sync requests with optional periodic polling."""

    def __init__(self, runner: SyncRunner, poll_interval_seconds: float = 0):
        """
        Initialize the worker.

        Args:
            runner: Coroutine function executing one sync request
            poll_interval_seconds: Interval for scheduled requests; 0 disables polling
        """
        self.runner = runner
        self.poll_interval_seconds = poll_interval_seconds
        self._queue: "asyncio.Queue[Optional[SyncRequest]]" = asyncio.Queue()
        self._pending: Optional[SyncRequest] = None
        self._current: Optional[SyncRequest] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """True while a submitted request waits to start."""
        return self._pending is not None

    @property
    def running(self) -> bool:
        """True while a sync is executing."""
        return self._current is not None

    @property
    def started(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def submit(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> bool:
        """
        Queue a sync request.

        Returns:
            bool: True if queued, False if coalesced into an already waiting request
        """
        if self._pending is not None:
            logger.info(
                "Sync already queued",
                extra={"log_type": "sync_coalesced", "trigger": trigger.value, "request_id": self._pending.request_id},
            )
            return False
        request = SyncRequest(trigger=trigger)
        self._pending = request
        self._queue.put_nowait(request)
        logger.info(
            "Sync queued",
            extra={"log_type": "sync_queued", "trigger": trigger.value, "request_id": request.request_id},
        )
        return True

    async def start(self) -> None:
        """Start the worker task, and the poller when an interval is set."""
        if self.started:
            return
        self._worker_task = asyncio.create_task(self._run(), name="sync-worker")
        if self.poll_interval_seconds and self.poll_interval_seconds > 0:
            self._poll_task = asyncio.create_task(self._poll(), name="sync-poller")
        logger.info(
            "Sync worker started",
            extra={"log_type": "sync_worker", "poll_interval_seconds": self.poll_interval_seconds},
        )

    async def stop(self) -> None:
        """Stop polling, let the current sync finish, then stop the worker."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._worker_task is not None:
            self._queue.put_nowait(None)
            await self._worker_task
            self._worker_task = None
        logger.info("Sync worker stopped", extra={"log_type": "sync_worker"})

    async def join(self) -> None:
        """Wait until every queued request has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                if request is None:
                    return
                if request is self._pending:
                    self._pending = None
                self._current = request
                await self.runner(request)
            except Exception as e:
                logger.error(
                    f"Sync request failed: {e}",
                    extra={"log_type": "sync_worker_error", "request_id": request.request_id},
                    exc_info=True,
                )
            finally:
                self._current = None
                self._queue.task_done()

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_seconds)
            self.submit(SyncTrigger.SCHEDULED)
