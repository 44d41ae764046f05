"""
WhatsApp Bridge Client — talks to a WhatsApp Web bridge over HTTP.

The bridge owns the multi-device session (QR pairing, reconnects, auth
files). This client only:
- probes the bridge for session state (/status)
- sends text to a JID (/messages)
- logs the session out (/logout)

Addresses are normalized before sending:
  private: 628123456789        → 628123456789@s.whatsapp.net
  group:   120363025246125888  → 120363025246125888@g.us
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import WhatsAppConfig, get_settings
from channels.base import MessagingClient, NotConnectedError, TransportError
from job_queue.jobs import normalize_target
from models.schemas import JobKind

logger = structlog.get_logger()


class WhatsAppBridgeClient(MessagingClient):

    def __init__(self, config: WhatsAppConfig = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().whatsapp
        self.client: Optional[httpx.AsyncClient] = http_client
        self._connected = False
        self._status: dict[str, Any] = {"status": "disconnected"}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.bridge_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _fetch_status(self) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.get("/status")
        response.raise_for_status()
        return response.json()

    async def connect(self) -> bool:
        """Refresh session state from the bridge. Never raises; returns is_connected."""
        try:
            self._status = await self._fetch_status()
            self._connected = str(self._status.get("status", "")).lower() == "connected"
        except (httpx.HTTPError, ValueError) as e:
            self._connected = False
            self._status = {"status": "disconnected", "error": str(e)}
            logger.warning("whatsapp_bridge_unreachable",
                           bridge_url=self.config.bridge_url, error=str(e))
            return False
        logger.info("whatsapp_bridge_status",
                    connected=self._connected,
                    status=self._status.get("status"))
        return self._connected

    def get_connection_status(self) -> dict[str, Any]:
        return {
            **super().get_connection_status(),
            "status": self._status.get("status", "disconnected"),
            "user": self._status.get("user"),
        }

    async def send_message(self, jid: str, text: str) -> dict[str, Any]:
        # the session may have been paired or restored since the last probe
        if not self._connected and not await self.connect():
            raise NotConnectedError(self.channel)

        client = await self._get_client()
        try:
            response = await client.post("/messages", json={"jid": jid, "text": text})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 409:
                self._connected = False
                self._status = {"status": "disconnected"}
                raise NotConnectedError(self.channel) from e
            raise TransportError(f"Bridge rejected message: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Bridge request failed: {e}") from e

        body = response.json() if response.content else {}
        logger.info("whatsapp_message_sent", to=jid, msg_id=body.get("id"))
        return {"status": "sent", "channel_message_id": body.get("id")}

    async def send_private_message(self, number: str, text: str) -> dict[str, Any]:
        return await self.send_message(normalize_target(JobKind.PRIVATE, number), text)

    async def send_group_message(self, group_id: str, text: str) -> dict[str, Any]:
        return await self.send_message(normalize_target(JobKind.GROUP, group_id), text)

    async def disconnect(self) -> None:
        """Log the bridge session out."""
        if not self._connected:
            return
        client = await self._get_client()
        try:
            response = await client.post("/logout")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Logout failed: {e}") from e
        self._connected = False
        self._status = {"status": "disconnected"}
        logger.info("whatsapp_disconnected")

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
