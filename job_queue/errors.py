"""Queue error taxonomy. Delivery-time transport errors live in channels.base."""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""


class SubmissionRejected(QueueError):
    """The job was not accepted; it will never be attempted."""

    def __init__(self, message: str, method: str = ""):
        self.method = method
        super().__init__(message)


class JobNotFoundError(QueueError):
    def __init__(self, kind: str, job_id: str):
        self.kind = kind
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found in {kind} queue")


class RetryNotSupportedError(QueueError):
    def __init__(self, reason: str = "Retry not supported in in-memory mode"):
        super().__init__(reason)


class BackendUnavailable(QueueError):
    """Durable backend unreachable. Triggers fallback, never reaches callers."""
