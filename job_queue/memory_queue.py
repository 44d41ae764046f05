"""
In-Memory Queue — bounded, single-worker fallback used when Redis is
disabled or unreachable.

- One FIFO shared by private and group jobs
- Overflow rejects the new job and counts it in dropped_messages
- One drain task at a time; each job waits its delay, then is delivered
- No retry and no history: a failed delivery is terminal
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from collections import deque
from typing import Any, Optional

from job_queue.backend import QueueBackend, empty_state_lists
from job_queue.errors import RetryNotSupportedError, SubmissionRejected
from job_queue.executor import DeliveryExecutor
from job_queue.jobs import MessageJob, sanitize_job
from models.schemas import JobKind, QueueMethod

logger = structlog.get_logger()


class InMemoryMessageQueue(QueueBackend):

    method = QueueMethod.IN_MEMORY.value

    def __init__(
        self,
        executor: DeliveryExecutor,
        max_queue_size: int = 1000,
        message_preview_chars: int = 120,
    ):
        self.executor = executor
        self.max_queue_size = max_queue_size
        self.message_preview_chars = message_preview_chars
        self.dropped_messages = 0
        self._queue: deque[MessageJob] = deque()
        self._processing = False
        self._worker: Optional[asyncio.Task] = None

    @property
    def processing(self) -> bool:
        return self._processing

    def __len__(self) -> int:
        return len(self._queue)

    async def start(self) -> None:
        logger.info("inmemory_queue_started", max_queue_size=self.max_queue_size)
        self.start_processing()

    async def enqueue(self, job: MessageJob) -> MessageJob:
        # check and append run without yielding, so concurrent callers
        # cannot both pass the capacity check
        if len(self._queue) >= self.max_queue_size:
            self.dropped_messages += 1
            logger.warning("inmemory_queue_full",
                           max_queue_size=self.max_queue_size,
                           dropped_messages=self.dropped_messages,
                           kind=job.kind.value)
            raise SubmissionRejected("Queue is full, message dropped", method=self.method)

        job = job.with_id(f"mem_{uuid.uuid4().hex[:12]}")
        self._queue.append(job)
        logger.info("job_enqueued",
                    method=self.method,
                    kind=job.kind.value,
                    job_id=job.job_id,
                    pending=len(self._queue))
        self.start_processing()
        return job

    def start_processing(self) -> Optional[asyncio.Task]:
        """Spawn the drain task unless one is already running."""
        if self._processing or not self._queue:
            return self._worker
        self._processing = True
        self._worker = asyncio.create_task(self._drain())
        return self._worker

    async def _drain(self) -> None:
        try:
            while self._queue:
                job = self._queue.popleft()
                try:
                    await self.executor.execute(job)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("inmemory_job_failed",
                                 kind=job.kind.value,
                                 job_id=job.job_id,
                                 error=str(e))
        finally:
            self._processing = False

    async def stats(self) -> dict[str, Any]:
        return {
            "privateMessages": {"waiting": self._count(JobKind.PRIVATE)},
            "groupMessages": {"waiting": self._count(JobKind.GROUP)},
            "processing": self._processing,
            "method": self.method,
            "maxQueueSize": self.max_queue_size,
            "droppedMessages": self.dropped_messages,
        }

    async def details(self, limit: int) -> dict[str, Any]:
        result: dict[str, Any] = {"method": self.method}
        for kind in JobKind:
            lists = empty_state_lists()
            pending = [j for j in self._queue if j.kind == kind][:limit]
            lists["waiting"] = [sanitize_job(j.view(), self.message_preview_chars) for j in pending]
            result[kind.value] = lists
        return result

    async def retry_job(self, kind: JobKind, job_id: str) -> MessageJob:
        raise RetryNotSupportedError()

    async def close(self, timeout: Optional[float] = None) -> None:
        """Let the current drain finish; cancel it if `timeout` elapses."""
        worker = self._worker
        if worker is not None and not worker.done():
            try:
                await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
            except asyncio.TimeoutError:
                worker.cancel()
                try:
                    await worker
                except asyncio.CancelledError:
                    pass
                logger.warning("inmemory_queue_close_timeout", abandoned=len(self._queue))
        logger.info("inmemory_queue_closed")

    def _count(self, kind: JobKind) -> int:
        return sum(1 for j in self._queue if j.kind == kind)
