"""
Redis Queue — durable backend with retry, backoff and job history.

Key Topology (per queue, queue ∈ {private, group}):
  {prefix}:{queue}:id          — INCR counter for job ids
  {prefix}:{queue}:job:{id}    — job hash (see job_queue.jobs)
  {prefix}:{queue}:wait        — list, FIFO (RPUSH / LMOVE from the left)
  {prefix}:{queue}:active      — list of ids being delivered (≤ 1 per process)
  {prefix}:{queue}:delayed     — sorted set, score = epoch ms the retry is due
  {prefix}:{queue}:completed   — list, newest first, trimmed to remove_on_complete
  {prefix}:{queue}:failed      — list, newest first, trimmed to remove_on_fail

Lifecycle:
  wait ──LMOVE──▶ active ──ok──▶ completed
                    │
                    └─error─▶ delayed (attempts < cap) ──due──▶ wait
                    └─error─▶ failed  (attempts == cap)

Availability is decided once: the first PING must answer inside the grace
window, and any later connection error marks the backend unavailable for
the rest of the process lifetime.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import structlog
from typing import Any, Callable, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config.settings import QueueConfig
from job_queue.backend import QueueBackend, empty_state_lists
from job_queue.errors import BackendUnavailable, JobNotFoundError
from job_queue.executor import DeliveryExecutor
from job_queue.jobs import MessageJob, job_view_from_hash, now_ms, sanitize_job
from models.schemas import JobKind, QueueMethod

logger = structlog.get_logger()

_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)


class RedisMessageQueue(QueueBackend):
    """
    Two independent queues (private, group), each drained by exactly one
    worker task so deliveries of the same kind never overlap.
    """

    method = QueueMethod.REDIS.value

    def __init__(self, config: QueueConfig, executor: DeliveryExecutor, redis_client=None):
        self.config = config
        self.executor = executor
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._ready = asyncio.Event()
        self._settled = asyncio.Event()
        self._unavailable = False
        self._stopping = False
        self._connect_task: Optional[asyncio.Task] = None
        self._workers: dict[JobKind, asyncio.Task] = {}
        self._listeners: dict[str, list[Callable[..., Any]]] = {}

    # ── Keys ──────────────────────────────────────────────────

    def _key(self, kind: JobKind, suffix: str) -> str:
        return f"{self.config.prefix}:{JobKind(kind).value}:{suffix}"

    def _job_key(self, kind: JobKind, job_id: str) -> str:
        return self._key(kind, f"job:{job_id}")

    # ── Availability ──────────────────────────────────────────

    @property
    def ready(self) -> bool:
        return self._ready.is_set() and not self._unavailable

    @property
    def available(self) -> bool:
        return not self._unavailable

    @property
    def initializing(self) -> bool:
        return not self._settled.is_set()

    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the availability decision, at most `timeout` seconds."""
        if self._unavailable:
            return False
        if self._ready.is_set():
            return True
        try:
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.ready

    def mark_unavailable(self, reason: str) -> None:
        """One-way switch: the backend stays absent for this process."""
        if self._unavailable:
            return
        self._unavailable = True
        self._stopping = True
        self._ready.clear()
        self._settled.set()
        logger.warning("redis_backend_unavailable", reason=reason, prefix=self.config.prefix)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._connect_task is not None or self._unavailable:
            return
        self._connect_task = asyncio.create_task(self._connect())

    async def _connect(self) -> None:
        try:
            if self._redis is None:
                import redis.asyncio as aioredis
                self._redis = aioredis.from_url(
                    self.config.redis_url,
                    decode_responses=True,
                )
            await asyncio.wait_for(self._redis.ping(), timeout=self.config.redis_grace_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.mark_unavailable(f"connect failed: {str(e) or type(e).__name__}")
            return

        if self._unavailable:
            return
        try:
            await self._recover_stalled()
        except _CONNECTION_ERRORS as e:
            self.mark_unavailable(f"connection lost: {e}")
            return

        self._ready.set()
        self._settled.set()
        for kind in JobKind:
            self._workers[kind] = asyncio.create_task(self._work(kind))
        logger.info("redis_queue_connected", prefix=self.config.prefix, attempts=self.config.attempts)

    async def _recover_stalled(self) -> None:
        """Return ids left in `active` by a previous process to the head of `wait`."""
        for kind in JobKind:
            moved = 0
            while await self._redis.lmove(
                self._key(kind, "active"), self._key(kind, "wait"), "RIGHT", "LEFT"
            ):
                moved += 1
            if moved:
                logger.warning("redis_stalled_jobs_requeued", queue=kind.value, count=moved)

    async def close(self, timeout: float = 10.0) -> None:
        self._stopping = True
        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass

        workers = [t for t in self._workers.values() if not t.done()]
        if workers:
            _, pending = await asyncio.wait(workers, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()

        if self._redis is not None and self._owns_client:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.error("redis_close_error", error=str(e))
        logger.info("redis_queue_closed")

    # ── Events ────────────────────────────────────────────────

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register a listener for "completed", "failed" or "retrying"."""
        self._listeners.setdefault(event, []).append(callback)

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in self._listeners.get(event, []):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("queue_listener_error", queue_event=event, error=str(e))

    # ── Submission ────────────────────────────────────────────

    async def enqueue(self, job: MessageJob) -> MessageJob:
        if not self.ready:
            raise BackendUnavailable("redis queue not ready")

        job_id = await self._redis.incr(self._key(job.kind, "id"))
        job = job.with_id(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.kind, job.job_id),
                      mapping={**job.to_dict(), "attempts_made": "0"})
            pipe.rpush(self._key(job.kind, "wait"), job.job_id)
            await pipe.execute()

        logger.info("job_enqueued",
                    method=self.method,
                    kind=job.kind.value,
                    job_id=job.job_id,
                    delay_ms=job.delay_ms)
        return job

    async def retry_job(self, kind: JobKind, job_id: str) -> MessageJob:
        kind = JobKind(kind)
        data = await self._redis.hgetall(self._job_key(kind, job_id))
        if not data:
            raise JobNotFoundError(kind.value, str(job_id))
        original = MessageJob.from_dict(data)
        new_job = await self.enqueue(original.resubmission())
        logger.info("job_retried", queue=kind.value, job_id=job_id, new_job_id=new_job.job_id)
        return new_job

    # ── Worker ────────────────────────────────────────────────

    async def _work(self, kind: JobKind) -> None:
        logger.info("redis_worker_started", queue=kind.value)
        while not self._stopping:
            try:
                await self._promote_delayed(kind)
                job_id = await self._redis.lmove(
                    self._key(kind, "wait"), self._key(kind, "active"), "LEFT", "RIGHT"
                )
                if job_id is None:
                    await asyncio.sleep(self.config.poll_interval)
                    continue
                await self._process(kind, job_id)
            except asyncio.CancelledError:
                break
            except _CONNECTION_ERRORS as e:
                self.mark_unavailable(f"connection lost: {e}")
                break
            except Exception as e:
                logger.error("redis_worker_error", queue=kind.value, error=str(e))
                await asyncio.sleep(self.config.poll_interval)
        logger.info("redis_worker_stopped", queue=kind.value)

    async def _promote_delayed(self, kind: JobKind) -> None:
        """Move retries whose backoff has elapsed back onto `wait`."""
        delayed_key = self._key(kind, "delayed")
        due = await self._redis.zrangebyscore(delayed_key, "-inf", now_ms())
        for job_id in due:
            # ZREM decides which process owns the promotion
            if await self._redis.zrem(delayed_key, job_id):
                await self._redis.rpush(self._key(kind, "wait"), job_id)

    async def _process(self, kind: JobKind, job_id: str) -> None:
        job_key = self._job_key(kind, job_id)
        data = await self._redis.hgetall(job_key)
        if not data:
            await self._redis.lrem(self._key(kind, "active"), 1, job_id)
            logger.warning("redis_job_missing", queue=kind.value, job_id=job_id)
            return

        await self._redis.hset(job_key, "processed_at", str(now_ms()))
        job = MessageJob.from_dict(data)
        try:
            result = await self.executor.execute(job)
        except Exception as e:
            await self._handle_failure(kind, job, e)
        else:
            await self._handle_success(kind, job, result)

    async def _handle_success(self, kind: JobKind, job: MessageJob, result: Any) -> None:
        job_key = self._job_key(kind, job.job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(job_key, "attempts_made", 1)
            pipe.hset(job_key, mapping={
                "finished_at": str(now_ms()),
                "return_value": json.dumps(result, default=str),
            })
            pipe.lrem(self._key(kind, "active"), 1, job.job_id)
            pipe.lpush(self._key(kind, "completed"), job.job_id)
            await pipe.execute()
        await self._trim(kind, "completed", self.config.remove_on_complete)

        logger.info("job_completed", queue=kind.value, job_id=job.job_id)
        await self._emit("completed", job, result)

    async def _handle_failure(self, kind: JobKind, job: MessageJob, error: Exception) -> None:
        job_key = self._job_key(kind, job.job_id)
        reason = str(error) or type(error).__name__
        attempts = await self._redis.hincrby(job_key, "attempts_made", 1)

        if attempts < self.config.attempts:
            backoff_ms = self.config.backoff_delay_ms * (2 ** (attempts - 1))
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(job_key, "failed_reason", reason)
                pipe.lrem(self._key(kind, "active"), 1, job.job_id)
                pipe.zadd(self._key(kind, "delayed"), {job.job_id: now_ms() + backoff_ms})
                await pipe.execute()
            logger.info("job_scheduled_for_retry",
                        queue=kind.value,
                        job_id=job.job_id,
                        attempt=attempts,
                        backoff_ms=backoff_ms)
            await self._emit("retrying", job, error, attempts)
            return

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(job_key, mapping={"failed_reason": reason, "finished_at": str(now_ms())})
            pipe.lrem(self._key(kind, "active"), 1, job.job_id)
            pipe.lpush(self._key(kind, "failed"), job.job_id)
            await pipe.execute()
        await self._trim(kind, "failed", self.config.remove_on_fail)

        logger.warning("job_failed", queue=kind.value, job_id=job.job_id,
                       attempts=attempts, error=reason)
        await self._emit("failed", job, error)

    async def _trim(self, kind: JobKind, state: str, keep: int) -> None:
        """Cap a history list, deleting hashes of evicted jobs."""
        list_key = self._key(kind, state)
        keep = max(0, keep)
        stale = await self._redis.lrange(list_key, keep, -1)
        if not stale:
            return
        async with self._redis.pipeline(transaction=True) as pipe:
            if keep == 0:
                pipe.delete(list_key)
            else:
                pipe.ltrim(list_key, 0, keep - 1)
            for job_id in stale:
                pipe.delete(self._job_key(kind, job_id))
            await pipe.execute()

    # ── Introspection ─────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        async with self._redis.pipeline(transaction=False) as pipe:
            for kind in JobKind:
                pipe.llen(self._key(kind, "wait"))
                pipe.llen(self._key(kind, "active"))
                pipe.zcard(self._key(kind, "delayed"))
                pipe.llen(self._key(kind, "completed"))
                pipe.llen(self._key(kind, "failed"))
            counts = await pipe.execute()

        result: dict[str, Any] = {"method": self.method}
        for i, kind in enumerate(JobKind):
            waiting, active, delayed, completed, failed = counts[i * 5:(i + 1) * 5]
            result[f"{kind.value}Messages"] = {
                "waiting": waiting,
                "active": active,
                "delayed": delayed,
                "completed": completed,
                "failed": failed,
            }
        return result

    async def _ids(self, kind: JobKind, state: str, limit: int) -> list[str]:
        key = self._key(kind, state)
        if state == "delayed":
            return await self._redis.zrange(key, 0, limit - 1)
        return await self._redis.lrange(key, 0, limit - 1)

    async def details(self, limit: int) -> dict[str, Any]:
        result: dict[str, Any] = {"method": self.method}
        for kind in JobKind:
            lists = empty_state_lists()
            for state in lists:
                ids = await self._ids(kind, state, limit)
                if not ids:
                    continue
                async with self._redis.pipeline(transaction=False) as pipe:
                    for job_id in ids:
                        pipe.hgetall(self._job_key(kind, job_id))
                    hashes = await pipe.execute()
                lists[state] = [
                    sanitize_job(job_view_from_hash(h), self.config.message_preview_chars)
                    for h in hashes if h
                ][:limit]
            result[kind.value] = lists
        return result

    async def get_job(self, kind: JobKind, job_id: str) -> Optional[dict[str, Any]]:
        data = await self._redis.hgetall(self._job_key(kind, job_id))
        return job_view_from_hash(data) if data else None
