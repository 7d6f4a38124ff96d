"""Signal worker - bounded queue between the webhook and the reconciler.

The webhook enqueues decoded signals and answers the push right away; a
small pool of consumer tasks feeds them to the reconciler. A full queue is
reported to the caller so the push is refused and redelivered later.
"""

import asyncio
from typing import List, Optional

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.signals import Signal
from iap_reconciler.services.reconciler import ReconcileConflict, Reconciler

logger = get_logger(__name__)


class QueueFull(Exception):
    """Raised when the signal queue is at capacity."""

    retryable = True


class SignalWorker:
    """Bounded asyncio queue of signals with consumer tasks."""

    def __init__(self, reconciler: Reconciler, maxsize: int = 1000, workers: int = 1):
        self._reconciler = reconciler
        self._maxsize = maxsize
        self._workers = workers
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    def _get_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        return self._queue

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def qsize(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def enqueue(self, signal: Signal) -> None:
        """Queue a signal for reconciliation.

        Raises:
            QueueFull: If the queue is at capacity
        """
        try:
            self._get_queue().put_nowait(signal)
        except asyncio.QueueFull as e:
            logger.warning(
                "signal_queue_full",
                source=signal.source.value,
                signal_id=signal.signal_id,
                maxsize=self._maxsize,
            )
            raise QueueFull(f"Signal queue is full ({self._maxsize})") from e
        logger.debug("signal_enqueued", source=signal.source.value, signal_id=signal.signal_id, qsize=self.qsize())

    async def start(self) -> None:
        """Start the consumer tasks."""
        if self._tasks:
            return
        queue = self._get_queue()
        self._tasks = [asyncio.create_task(self._consume(queue, n)) for n in range(self._workers)]
        logger.info("signal_worker_started", workers=self._workers, maxsize=self._maxsize)

    async def stop(self) -> None:
        """Cancel the consumer tasks. Queued signals are dropped; the platform redelivers them."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("signal_worker_stopped", dropped=self.qsize())

    async def drain(self) -> None:
        """Wait until every queued signal was processed (consumers must be running)."""
        await self._get_queue().join()

    async def _consume(self, queue: asyncio.Queue, worker_id: int) -> None:
        while True:
            signal = await queue.get()
            try:
                self.process(signal)
            finally:
                queue.task_done()

    def process(self, signal: Signal) -> None:
        """Reconcile one signal, logging instead of raising."""
        try:
            self._reconciler.reconcile(signal)
            self.processed += 1
        except ReconcileConflict as e:
            self.failed += 1
            logger.error(
                "signal_reconcile_conflict",
                source=signal.source.value,
                signal_id=signal.signal_id,
                error=str(e),
            )
        except Exception as e:
            self.failed += 1
            logger.error(
                "signal_processing_failed",
                source=signal.source.value,
                signal_id=signal.signal_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
