"""
Delivery Executor — runs one dequeued job against the messaging client.

Flow (identical for both backends):
  1. sleep delay_ms (cooperative)
  2. normalize the target address
  3. send through the messaging client for the job's kind
  4. success → status "sent"   (only when the job carries a message_id)
  5. failure → status "failed" (only when the job carries a message_id), re-raise
  6. a failing status write is logged; it never replaces the delivery outcome
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional, Protocol

from channels.base import MessagingClient, NotConnectedError
from job_queue.jobs import MessageJob
from models.schemas import JobKind, MessageStatus

logger = structlog.get_logger()


class StatusStore(Protocol):
    async def update_message_status(self, message_id: Any, status: str) -> Any:
        ...


class DeliveryExecutor:
    """
    Shared delivery logic. The client and store are injected at
    construction or through attach() during application startup;
    either may be absent, which makes every delivery fail cleanly.
    """

    def __init__(self, client: Optional[MessagingClient] = None, store: Optional[StatusStore] = None):
        self.client = client
        self.store = store

    def attach(self, client: Optional[MessagingClient], store: Optional[StatusStore]) -> None:
        """Startup wire-up: bind the messaging client and persistence layer."""
        self.client = client
        self.store = store

    async def execute(self, job: MessageJob) -> dict[str, Any]:
        if job.delay_ms > 0:
            await asyncio.sleep(job.delay_ms / 1000)

        target = job.normalized_target
        try:
            await self._send(job, target)
        except Exception as e:
            logger.error("message_delivery_failed",
                         kind=job.kind.value,
                         job_id=job.job_id,
                         target=target,
                         error=str(e))
            await self._record_status(job, MessageStatus.FAILED)
            raise

        await self._record_status(job, MessageStatus.SENT)
        logger.info("message_delivered",
                    kind=job.kind.value,
                    job_id=job.job_id,
                    target=target)
        return {"success": True, "target": target}

    async def _send(self, job: MessageJob, target: str) -> None:
        client = self.client
        if client is None:
            raise NotConnectedError()
        if job.kind == JobKind.PRIVATE:
            await client.send_private_message(target, job.message)
        else:
            await client.send_group_message(target, job.message)

    async def _record_status(self, job: MessageJob, status: MessageStatus) -> None:
        if job.message_id is None or self.store is None:
            return
        try:
            await self.store.update_message_status(job.message_id, status.value)
        except Exception as e:
            logger.error("message_status_update_failed",
                         message_id=job.message_id,
                         status=status.value,
                         error=str(e))
