"""
Tests — Message store (SQLite via aiosqlite)

Coverage:
  message log lifecycle, status updates, newest-first history,
  API key creation and validation
"""
import pytest


class TestMessageLog:
    @pytest.mark.asyncio
    async def test_log_message_returns_id(self, message_store):
        first = await message_store.log_message("628@s.whatsapp.net", "hi")
        second = await message_store.log_message("628@s.whatsapp.net", "again")
        assert second == first + 1
        row = await message_store.get_message(first)
        assert row["status"] == "pending"
        assert row["type"] == "sent"

    @pytest.mark.asyncio
    async def test_update_status(self, message_store):
        message_id = await message_store.log_message("1203@g.us", "hello")
        assert await message_store.update_message_status(message_id, "sent") == 1
        assert (await message_store.get_message(message_id))["status"] == "sent"

    @pytest.mark.asyncio
    async def test_update_accepts_string_id(self, message_store):
        message_id = await message_store.log_message("1203@g.us", "hello")
        await message_store.update_message_status(str(message_id), "failed")
        assert (await message_store.get_message(message_id))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_update_unknown_id_touches_nothing(self, message_store):
        assert await message_store.update_message_status(999, "sent") == 0

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, message_store):
        message_id = await message_store.log_message("628@s.whatsapp.net", "hi")
        with pytest.raises(ValueError):
            await message_store.update_message_status(message_id, "delivered-ish")

    @pytest.mark.asyncio
    async def test_get_messages_newest_first(self, message_store):
        for i in range(3):
            await message_store.log_message("628@s.whatsapp.net", f"m{i}")
        rows = await message_store.get_messages(limit=2)
        assert [r["message"] for r in rows] == ["m2", "m1"]

    @pytest.mark.asyncio
    async def test_missing_message(self, message_store):
        assert await message_store.get_message(12345) is None


class TestApiKeys:
    @pytest.mark.asyncio
    async def test_created_key_validates(self, message_store):
        key = await message_store.create_api_key("ops")
        assert len(key) == 48
        assert await message_store.validate_api_key(key) is True

    @pytest.mark.asyncio
    async def test_explicit_key(self, message_store):
        await message_store.create_api_key("ops", key="fixed-key")
        assert await message_store.validate_api_key("fixed-key") is True

    @pytest.mark.asyncio
    async def test_unknown_and_empty_keys_rejected(self, message_store):
        assert await message_store.validate_api_key("nope") is False
        assert await message_store.validate_api_key("") is False
