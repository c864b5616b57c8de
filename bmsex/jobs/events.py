"""
Batch Progress Notifications

The orchestrator publishes a ProgressEvent on every job and file state
transition. Events go onto a bounded asyncio queue drained by a background
task that calls the subscribed listeners, so publishing never waits on a
listener. When the queue is full the event is dropped and counted.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from bmsex.models.batch import ProgressEvent
from bmsex.services.error_service import AuditSink

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class ProgressNotifier:
    """
    Fan-out of progress events to listeners.

    Listeners may be plain callables or coroutine functions. A listener that
    raises, or a coroutine listener that runs past ``listener_timeout``, is
    logged and skipped for that event.
    """

    def __init__(
        self,
        max_queue_size: int = 1000,
        listener_timeout: float = 5.0,
        audit_sink: Optional[AuditSink] = None
    ):
        self.max_queue_size = max_queue_size
        self.listener_timeout = listener_timeout
        self.audit_sink = audit_sink
        self._listeners: List[ProgressListener] = []
        self._queue: Optional[asyncio.Queue] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._stats = {
            'published': 0,
            'delivered': 0,
            'dropped': 0,
            'listener_errors': 0,
        }

    def subscribe(self, listener: ProgressListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def dropped(self) -> int:
        return self._stats['dropped']

    def publish(self, event: ProgressEvent) -> None:
        """Queue an event without waiting; must be called from the event loop"""
        self._ensure_started()
        self._stats['published'] += 1
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats['dropped'] += 1
            logger.warning(f"Progress queue full; dropped {event.event} for {event.job_id}")

    async def flush(self) -> None:
        """Wait until every queued event has been dispatched"""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'listeners': len(self._listeners),
            'queued': self._queue.qsize() if self._queue is not None else 0,
        }

    def _ensure_started(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: ProgressEvent) -> None:
        if self.audit_sink is not None:
            try:
                self.audit_sink.record_event(event.to_dict())
            except Exception as e:
                logger.warning(f"Audit sink rejected progress event: {e}")

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await asyncio.wait_for(result, timeout=self.listener_timeout)
                self._stats['delivered'] += 1
            except asyncio.TimeoutError:
                self._stats['listener_errors'] += 1
                logger.warning(f"Progress listener timed out on {event.event} for {event.job_id}")
            except Exception as e:
                self._stats['listener_errors'] += 1
                logger.warning(f"Progress listener failed on {event.event} for {event.job_id}: {e}")
