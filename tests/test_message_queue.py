"""
Tests — Queue facade (backend selection, fallback, introspection, retry)

Coverage:
  in-memory mode:  submission results, delay precedence, rejection, retry refusal
  redis mode:      selection after PING, initializing fallback, unavailable fallback,
                   submission-error fallback, stats/details method tags,
                   in-memory fallback jobs reported alongside redis
  end-to-end:      persisted status pending → sent / pending → failed
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from job_queue.errors import JobNotFoundError, RetryNotSupportedError
from job_queue.jobs import MessageJob
from job_queue.message_queue import (
    MessageQueueService, clamp_limit, create_message_queue, get_message_queue, reset_message_queue,
)
from models.schemas import JobKind


def hanging_redis():
    async def hang():
        await asyncio.sleep(10)

    r = MagicMock()
    r.ping = hang
    return r


def broken_redis():
    r = MagicMock()
    r.ping = AsyncMock(side_effect=ConnectionError("refused"))
    return r


@pytest_asyncio.fixture
async def memory_service(queue_config, client, status_store):
    service = MessageQueueService(queue_config)
    service.attach(client, status_store)
    await service.start()
    yield service
    await service.close()


@pytest_asyncio.fixture
async def redis_service(queue_config, fake_redis, client, status_store):
    queue_config.use_redis = True
    service = MessageQueueService(queue_config, redis_client=fake_redis)
    service.attach(client, status_store)
    await service.start()
    assert await service.durable.wait_ready(1.0)
    yield service
    await service.close()


class TestClampLimit:
    def test_bounds(self):
        assert clamp_limit(0) == 1
        assert clamp_limit(-4) == 1
        assert clamp_limit(10_000) == 500
        assert clamp_limit("25") == 25
        assert clamp_limit(None) == 50


class TestInMemoryMode:
    @pytest.mark.asyncio
    async def test_enqueue_private(self, memory_service, client, wait_until):
        result = await memory_service.enqueue_private("628", "hi", message_id=3, delay_ms=0)
        assert result["success"] is True
        assert result["method"] == "in-memory"
        assert result["jobId"]
        await wait_until(lambda: client.sent)
        assert client.sent == [("private", "628@s.whatsapp.net", "hi")]

    @pytest.mark.asyncio
    async def test_enqueue_group(self, memory_service, client, wait_until):
        await memory_service.enqueue_group("1203", "hi all", delay_ms=0)
        await wait_until(lambda: client.sent)
        assert client.sent == [("group", "1203@g.us", "hi all")]

    @pytest.mark.asyncio
    async def test_delay_precedence(self, queue_config, client):
        queue_config.default_delay_ms = 750
        service = MessageQueueService(queue_config)
        captured = []
        service.memory.enqueue = AsyncMock(side_effect=lambda job: captured.append(job) or job.with_id("m"))

        await service.enqueue_private("628", "a", delay_ms=20)
        await service.enqueue_private("628", "b")
        queue_config.default_delay_ms = None
        await service.enqueue_private("628", "c")
        assert [j.delay_ms for j in captured] == [20, 750, 500]

    @pytest.mark.asyncio
    async def test_invalid_submission_rejected_synchronously(self, memory_service):
        with pytest.raises(ValueError):
            await memory_service.enqueue_private("628", "hi", delay_ms=-1)
        with pytest.raises(ValueError):
            await memory_service.enqueue_private("", "hi")

    @pytest.mark.asyncio
    async def test_capacity_rejection_is_a_result(self, queue_config, client, status_store):
        queue_config.max_queue_size = 1
        service = MessageQueueService(queue_config)
        service.attach(client, status_store)
        first = await service.enqueue_private("628", "a")
        second = await service.enqueue_private("628", "b")
        assert first["success"] is True
        assert second == {"success": False, "method": "in-memory", "error": "Queue is full, message dropped"}
        await service.close()

    @pytest.mark.asyncio
    async def test_stats_and_details(self, memory_service):
        stats = await memory_service.get_stats()
        assert stats["method"] == "in-memory"
        details = await memory_service.get_details(10)
        assert details["method"] == "in-memory"
        assert set(details["private"]) >= {"waiting", "active", "completed", "failed"}

    @pytest.mark.asyncio
    async def test_details_limit_clamped(self, memory_service):
        with patch.object(memory_service.memory, "details", new=AsyncMock(return_value={})) as details:
            await memory_service.get_details(100_000)
            await memory_service.get_details(0)
        assert [c.args[0] for c in details.await_args_list] == [500, 1]

    @pytest.mark.asyncio
    async def test_retry_not_supported(self, memory_service):
        with pytest.raises(RetryNotSupportedError):
            await memory_service.retry_job("private", "1")

    @pytest.mark.asyncio
    async def test_retry_rejects_unknown_queue(self, memory_service):
        with pytest.raises(ValueError):
            await memory_service.retry_job("broadcast", "1")


class TestRedisMode:
    @pytest.mark.asyncio
    async def test_enqueue_uses_redis(self, redis_service, fake_redis):
        result = await redis_service.enqueue_private("628", "hi", delay_ms=0)
        assert result == {"success": True, "jobId": "1", "method": "redis"}
        assert redis_service.method == "redis"
        assert await fake_redis.exists("TEST:private:job:1")

    @pytest.mark.asyncio
    async def test_stats_tagged_redis(self, redis_service):
        stats = await redis_service.get_stats()
        assert stats["method"] == "redis"
        assert "active" in stats["privateMessages"]

    @pytest.mark.asyncio
    async def test_fallback_jobs_stay_visible_once_redis_is_ready(self, redis_service, client, wait_until):
        for text in ("early-1", "early-2"):
            await redis_service.memory.enqueue(MessageJob.create(JobKind.PRIVATE, "628", text, delay_ms=200))
        await wait_until(lambda: redis_service.memory.processing and len(redis_service.memory) == 1)

        stats = await redis_service.get_stats()
        assert stats["method"] == "redis"
        assert stats["inMemoryFallback"] == {"waiting": 1, "processing": True, "droppedMessages": 0}

        details = await redis_service.get_details(10)
        assert [j["data"]["message"] for j in details["inMemoryFallback"]["private"]] == ["early-2"]
        assert details["inMemoryFallback"]["group"] == []

        await wait_until(lambda: len(client.sent) == 2)
        assert (await redis_service.get_stats())["inMemoryFallback"]["waiting"] == 0

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, redis_service, fake_redis, client, wait_until):
        from channels.base import TransportError
        client.fail_with = TransportError("down")
        first = await redis_service.enqueue_group("1203", "again", message_id=4, delay_ms=0)
        await wait_until(lambda: fake_redis.llen("TEST:group:failed"))

        client.fail_with = None
        result = await redis_service.retry_job("group", first["jobId"])
        assert result["newJobId"] != first["jobId"]
        await wait_until(lambda: client.sent)
        assert client.sent == [("group", "1203@g.us", "again")]

    @pytest.mark.asyncio
    async def test_retry_unknown_job(self, redis_service):
        with pytest.raises(JobNotFoundError):
            await redis_service.retry_job("private", "404")

    @pytest.mark.asyncio
    async def test_initializing_falls_back_for_the_call(self, queue_config, client):
        queue_config.use_redis = True
        queue_config.enqueue_ready_timeout = 0.05
        service = MessageQueueService(queue_config, redis_client=hanging_redis())
        service.attach(client, None)
        await service.start()

        assert service.method == "redis-initializing"
        stats = await service.get_stats()
        assert stats["method"] == "redis-initializing"
        details = await service.get_details()
        assert details["private"]["failed"] == []

        result = await service.enqueue_private("628", "hi", delay_ms=0)
        assert result["success"] is True
        assert result["method"] == "in-memory"
        assert service.durable.available
        await service.close()

    @pytest.mark.asyncio
    async def test_unreachable_redis_downgrades_permanently(self, queue_config, client, wait_until):
        queue_config.use_redis = True
        service = MessageQueueService(queue_config, redis_client=broken_redis())
        service.attach(client, None)
        await service.start()

        result = await service.enqueue_private("628", "hi", delay_ms=0)
        assert result["method"] == "in-memory"
        assert service.method == "in-memory"
        assert (await service.get_stats())["method"] == "in-memory"
        with pytest.raises(RetryNotSupportedError):
            await service.retry_job("private", "1")
        await wait_until(lambda: client.sent)
        await service.close()

    @pytest.mark.asyncio
    async def test_submission_error_falls_back_once(self, redis_service, client, wait_until):
        redis_service.durable.enqueue = AsyncMock(side_effect=ConnectionError("reset"))
        result = await redis_service.enqueue_private("628", "hi", delay_ms=0)
        assert result["success"] is True
        assert result["method"] == "in-memory"
        assert not redis_service.durable.available

        await redis_service.enqueue_private("628", "again", delay_ms=0)
        assert redis_service.durable.enqueue.await_count == 1
        await wait_until(lambda: len(client.sent) == 2)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_private_pending_to_sent(self, queue_config, client, message_store, wait_until):
        service = MessageQueueService(queue_config)
        service.attach(client, message_store)
        await service.start()

        message_id = await message_store.log_message("628@s.whatsapp.net", "hello", "sent", "pending")
        await service.enqueue_private("628", "hello", message_id=message_id, delay_ms=0)

        async def sent():
            row = await message_store.get_message(message_id)
            return row["status"] == "sent"

        await wait_until(sent)
        await service.close()

    @pytest.mark.asyncio
    async def test_group_without_client_fails_in_memory(self, queue_config, message_store, wait_until):
        service = MessageQueueService(queue_config)
        service.attach(None, message_store)
        await service.start()

        message_id = await message_store.log_message("1203@g.us", "hello", "sent", "pending")
        await service.enqueue_group("1203", "hello", message_id=message_id, delay_ms=0)

        async def failed():
            row = await message_store.get_message(message_id)
            return row["status"] == "failed"

        await wait_until(failed)
        await service.close()

    @pytest.mark.asyncio
    async def test_group_without_client_fails_in_redis(
        self, queue_config, fake_redis, message_store, wait_until
    ):
        queue_config.use_redis = True
        service = MessageQueueService(queue_config, redis_client=fake_redis)
        service.attach(None, message_store)
        await service.start()

        message_id = await message_store.log_message("1203@g.us", "hello", "sent", "pending")
        result = await service.enqueue_group("1203", "hello", message_id=message_id, delay_ms=0)
        assert result["method"] == "redis"

        async def in_failed_list():
            details = await service.get_details(10)
            return details["group"]["failed"]

        failed = await wait_until(in_failed_list)
        assert failed[0]["id"] == result["jobId"]
        assert failed[0]["attemptsMade"] == 3
        assert (await message_store.get_message(message_id))["status"] == "failed"
        await service.close()


class TestFactory:
    def setup_method(self):
        reset_message_queue()

    def teardown_method(self):
        reset_message_queue()

    def test_singleton(self, queue_config):
        q1 = create_message_queue(queue_config)
        q2 = get_message_queue()
        assert q1 is q2

    def test_memory_backend_by_default(self, queue_config):
        q = create_message_queue(queue_config)
        assert q.durable is None

    def test_redis_backend_when_enabled(self, queue_config):
        queue_config.use_redis = True
        q = create_message_queue(queue_config)
        assert q.durable is not None
