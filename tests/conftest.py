"""Shared test fixtures for the dispatch gateway."""
import asyncio
import time
from typing import Any, Callable
from unittest.mock import AsyncMock

import fakeredis
import pytest
import pytest_asyncio

from channels.base import MessagingClient, NotConnectedError, TransportError
from config.settings import DatabaseConfig, QueueConfig
from database.store import MessageStore


class FakeMessagingClient(MessagingClient):
    """Records every send; can be told to fail or to hold each send open."""

    def __init__(self, connected: bool = True, send_seconds: float = 0.0):
        self.connected = connected
        self.send_seconds = send_seconds
        self.fail_with: Exception = None
        self.sent: list[tuple[str, str, str]] = []
        self.attempts = 0
        self.active = 0
        self.max_active = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def _send(self, kind: str, target: str, text: str) -> dict[str, Any]:
        self.attempts += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.send_seconds:
                await asyncio.sleep(self.send_seconds)
            if not self.connected:
                raise NotConnectedError()
            if self.fail_with is not None:
                raise self.fail_with
            self.sent.append((kind, target, text))
            return {"status": "sent"}
        finally:
            self.active -= 1

    async def send_private_message(self, number: str, text: str) -> dict[str, Any]:
        return await self._send("private", number, text)

    async def send_group_message(self, group_id: str, text: str) -> dict[str, Any]:
        return await self._send("group", group_id, text)


async def wait_until(predicate: Callable[[], Any], timeout: float = 3.0, interval: float = 0.01):
    """Poll a sync or async predicate until it is truthy."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if time.monotonic() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until


@pytest.fixture
def make_client():
    return FakeMessagingClient


@pytest.fixture
def client() -> FakeMessagingClient:
    return FakeMessagingClient()


@pytest.fixture
def status_store() -> AsyncMock:
    store = AsyncMock()
    store.update_message_status = AsyncMock(return_value=1)
    return store


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(
        default_delay_ms=0,
        poll_interval=0.01,
        backoff_delay_ms=10,
        redis_grace_seconds=1.0,
        enqueue_ready_timeout=0.5,
        prefix="TEST",
    )


@pytest_asyncio.fixture
async def fake_redis():
    r = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield r
    await r.aclose()


@pytest_asyncio.fixture
async def message_store(tmp_path):
    store = MessageStore(DatabaseConfig(url=f"sqlite:///{tmp_path / 'messages.db'}"))
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def transport_error() -> TransportError:
    return TransportError("socket closed")
