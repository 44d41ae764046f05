"""
Message Queue — the single entry point for submitting and inspecting jobs.

Backend selection:
  queue.use_redis = false  → InMemoryMessageQueue only
  queue.use_redis = true   → RedisMessageQueue, with InMemoryMessageQueue as
                             the fallback while Redis is initializing (bounded
                             wait) and for the rest of the process once Redis
                             is marked unavailable

Result shapes:
  enqueue   → {"success": True, "jobId": "...", "method": "redis"}
              {"success": False, "method": "in-memory", "error": "..."}
  stats     → {"privateMessages": {...}, "groupMessages": {...}, "method": ...}
  details   → {"method": ..., "private": {state: [...]}, "group": {...}}
  retry     → {"newJobId": "..."}
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.settings import QueueConfig, get_settings
from job_queue.backend import QueueBackend, empty_state_lists
from job_queue.errors import RetryNotSupportedError, SubmissionRejected
from job_queue.executor import DeliveryExecutor
from job_queue.jobs import MessageId, MessageJob, resolve_delay
from job_queue.memory_queue import InMemoryMessageQueue
from job_queue.redis_queue import RedisMessageQueue
from models.schemas import JobKind, QueueMethod

logger = structlog.get_logger()

DETAILS_DEFAULT_LIMIT = 50
DETAILS_MAX_LIMIT = 500


def clamp_limit(limit: Any, default: int = DETAILS_DEFAULT_LIMIT) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    return max(1, min(DETAILS_MAX_LIMIT, value))


class MessageQueueService:
    """
    Facade over the durable and in-memory backends.

    Usage:
        queue = MessageQueueService(settings.queue)
        queue.attach(whatsapp_client, message_store)   # startup wire-up
        await queue.start()
        await queue.enqueue_private("628123456789", "hi", message_id=42)
        await queue.close()
    """

    def __init__(
        self,
        config: QueueConfig = None,
        executor: DeliveryExecutor = None,
        redis_client=None,
    ):
        self.config = config or get_settings().queue
        self.executor = executor or DeliveryExecutor()
        self.memory = InMemoryMessageQueue(
            self.executor,
            max_queue_size=self.config.max_queue_size,
            message_preview_chars=self.config.message_preview_chars,
        )
        self.durable: Optional[RedisMessageQueue] = None
        if self.config.use_redis:
            self.durable = RedisMessageQueue(self.config, self.executor, redis_client=redis_client)
        logger.info("message_queue_selected",
                    backend="redis" if self.durable else "in-memory",
                    prefix=self.config.prefix)

    def attach(self, client, store) -> None:
        """Bind the messaging client and persistence layer used for delivery."""
        self.executor.attach(client, store)

    async def start(self) -> None:
        await self.memory.start()
        if self.durable is not None:
            await self.durable.start()

    async def close(self) -> None:
        if self.durable is not None:
            await self.durable.close()
        await self.memory.close()

    # ── Backend selection ─────────────────────────────────────

    @property
    def method(self) -> str:
        if self.durable is None or not self.durable.available:
            return QueueMethod.IN_MEMORY.value
        if self.durable.ready:
            return QueueMethod.REDIS.value
        return QueueMethod.REDIS_INITIALIZING.value

    async def _submission_backend(self) -> QueueBackend:
        durable = self.durable
        if durable is None or not durable.available:
            return self.memory
        if durable.ready:
            return durable
        if await durable.wait_ready(self.config.enqueue_ready_timeout):
            return durable
        logger.info("redis_not_ready_using_inmemory",
                    waited_seconds=self.config.enqueue_ready_timeout)
        return self.memory

    # ── Submission ────────────────────────────────────────────

    async def enqueue_private(
        self,
        target: str,
        message: str,
        message_id: Optional[MessageId] = None,
        delay_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        return await self.enqueue(JobKind.PRIVATE, target, message, message_id, delay_ms)

    async def enqueue_group(
        self,
        target: str,
        message: str,
        message_id: Optional[MessageId] = None,
        delay_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        return await self.enqueue(JobKind.GROUP, target, message, message_id, delay_ms)

    async def enqueue(
        self,
        kind: JobKind,
        target: str,
        message: str,
        message_id: Optional[MessageId] = None,
        delay_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        if not target or not message:
            raise ValueError("target and message are required")
        job = MessageJob.create(
            kind=kind,
            target=target,
            message=message,
            message_id=message_id,
            delay_ms=resolve_delay(delay_ms, self.config.default_delay_ms),
        )

        backend = await self._submission_backend()
        if backend is self.durable:
            try:
                accepted = await backend.enqueue(job)
                return {"success": True, "jobId": accepted.job_id, "method": backend.method}
            except Exception as e:
                # the in-memory path becomes the only owner of this and later jobs
                self.durable.mark_unavailable(f"submission failed: {e}")
                logger.error("redis_enqueue_failed_using_inmemory",
                             kind=job.kind.value, error=str(e))
        return await self._submit_in_memory(job)

    async def _submit_in_memory(self, job: MessageJob) -> dict[str, Any]:
        try:
            accepted = await self.memory.enqueue(job)
        except SubmissionRejected as e:
            return {"success": False, "method": self.memory.method, "error": str(e)}
        return {"success": True, "jobId": accepted.job_id, "method": self.memory.method}

    # ── Introspection ─────────────────────────────────────────

    async def get_stats(self) -> dict[str, Any]:
        method = self.method
        if method == QueueMethod.IN_MEMORY.value:
            return await self.memory.stats()
        if method == QueueMethod.REDIS_INITIALIZING.value:
            stats = {
                "privateMessages": {"waiting": 0, "active": 0},
                "groupMessages": {"waiting": 0, "active": 0},
                "method": method,
            }
        else:
            stats = await self.durable.stats()
        # jobs accepted in-memory while redis was starting
        stats["inMemoryFallback"] = {
            "waiting": len(self.memory),
            "processing": self.memory.processing,
            "droppedMessages": self.memory.dropped_messages,
        }
        return stats

    async def get_details(self, limit: Any = DETAILS_DEFAULT_LIMIT) -> dict[str, Any]:
        limit = clamp_limit(limit)
        method = self.method
        if method == QueueMethod.IN_MEMORY.value:
            return await self.memory.details(limit)
        if method == QueueMethod.REDIS_INITIALIZING.value:
            details = {
                "method": method,
                "private": empty_state_lists(),
                "group": empty_state_lists(),
            }
        else:
            details = await self.durable.details(limit)
        fallback = await self.memory.details(limit)
        details["inMemoryFallback"] = {
            kind.value: fallback[kind.value]["waiting"] for kind in JobKind
        }
        return details

    # ── Retry ─────────────────────────────────────────────────

    async def retry_job(self, kind: Any, job_id: Any) -> dict[str, Any]:
        kind = JobKind(kind)
        durable = self.durable
        if durable is None or not durable.available:
            raise RetryNotSupportedError()
        if not durable.ready and not await durable.wait_ready(self.config.enqueue_ready_timeout):
            raise RetryNotSupportedError("Queues not initialized")
        new_job = await durable.retry_job(kind, str(job_id))
        return {"newJobId": new_job.job_id}


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueueService] = None


def create_message_queue(config: QueueConfig = None, executor: DeliveryExecutor = None) -> MessageQueueService:
    """Factory: create the queue facade once per process."""
    global _instance
    if _instance is None:
        _instance = MessageQueueService(config, executor)
    return _instance


def get_message_queue() -> MessageQueueService:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
