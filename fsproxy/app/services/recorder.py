"""
Metadata Recorder

Fire-and-forget auditing of operation results. Requests enqueue their
result and return immediately; a single background task persists
records to the metadata store on the worker pool. Store failures are
logged and never reach the request that produced the record.
"""

import asyncio

from structlog import get_logger

from fsproxy.app.services.metadata_store import MetadataStore
from fsproxy.fs.models import OperationResult

logger = get_logger(__name__)


class MetadataRecorder:
    """
    Queues operation results for background persistence.

    Usage:
        recorder = MetadataRecorder(store)
        recorder.start()
        recorder.record(result)       # never blocks, never raises
        await recorder.close()        # drains pending records
    """

    def __init__(self, store: MetadataStore, queue_size: int = 10000):
        """
        Initialize the recorder.

        Args:
            store: Durable store records are written to.
            queue_size: Pending records held before new ones are dropped.
        """
        self.store = store
        self._queue: asyncio.Queue[OperationResult] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None
        self._recorded = 0
        self._dropped = 0
        self._failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def stats(self) -> dict:
        return {
            "pending": self.pending,
            "recorded": self._recorded,
            "dropped": self._dropped,
            "failed": self._failed,
        }

    def start(self) -> None:
        """Spawn the background writer on the running loop."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="metadata-recorder")
            logger.info("metadata_recorder_started")

    def record(self, result: OperationResult) -> None:
        """Accept a result for persistence without waiting for it."""
        try:
            self._queue.put_nowait(result)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "metadata_record_dropped",
                operation_id=str(result.operation_id),
                pending=self._queue.qsize(),
            )

    async def _run(self) -> None:
        while True:
            result = await self._queue.get()
            try:
                await asyncio.to_thread(self.store.add_record, result)
                self._recorded += 1
            except Exception as e:
                self._failed += 1
                logger.error(
                    "metadata_record_failed",
                    operation_id=str(result.operation_id),
                    kind=result.kind.value,
                    path=result.path,
                    error=str(e),
                )
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every accepted record has been processed."""
        await self._queue.join()

    async def close(self, timeout: float = 5.0) -> None:
        """
        Drain pending records, then stop the background writer.

        Records still queued after the timeout are abandoned and logged.
        """
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("metadata_recorder_drain_timeout", abandoned=self._queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("metadata_recorder_stopped", **self.stats)
