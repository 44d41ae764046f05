"""
Queue backend interface.

Implementations:
  - RedisMessageQueue     (durable, retrying, with job history)
  - InMemoryMessageQueue  (bounded FIFO fallback, no persistence)

Both accept MessageJob values and hand them to a DeliveryExecutor; the
facade in job_queue.message_queue picks one per call.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from job_queue.jobs import MessageJob
from models.schemas import JobKind

STATES = ("waiting", "active", "completed", "failed", "delayed")


def empty_state_lists() -> dict[str, list[dict[str, Any]]]:
    return {state: [] for state in STATES}


class QueueBackend(ABC):
    """Interface that every queue backend must implement."""

    method: str = ""

    @abstractmethod
    async def start(self) -> None:
        """Begin processing. Must be safe to call more than once."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def enqueue(self, job: MessageJob) -> MessageJob:
        """Accept a job; returns it with its backend-assigned id.

        Raises SubmissionRejected when the job cannot be accepted.
        """
        ...

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def details(self, limit: int) -> dict[str, Any]:
        ...

    @abstractmethod
    async def retry_job(self, kind: JobKind, job_id: str) -> MessageJob:
        """Resubmit a finished job as a new one. Returns the new job."""
        ...
