"""
FastAPI Application — REST API + queue monitor WebSocket.

Provides:
- Send endpoints for private and group messages (logged, then queued)
- Message history and WhatsApp session status
- Queue statistics, per-state job details and manual retry
- /ws/queue: periodic queue snapshots for monitoring clients
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from channels.base import ChannelError, MessagingClient
from channels.whatsapp_client import WhatsAppBridgeClient
from database.store import MessageStore
from job_queue.errors import JobNotFoundError, RetryNotSupportedError
from job_queue.jobs import normalize_target
from job_queue.message_queue import MessageQueueService, clamp_limit
from models.schemas import (
    JobKind, MessageDirection, MessageRecord, MessageStatus,
    RetryJobRequest, SendGroupRequest, SendPrivateRequest,
)

logger = structlog.get_logger()

SUBSCRIBE_DEFAULT_INTERVAL_MS = 2000
SUBSCRIBE_MIN_INTERVAL_MS = 1000
SUBSCRIBE_MAX_INTERVAL_MS = 10000


def clamp_interval(value: Any) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        interval = SUBSCRIBE_DEFAULT_INTERVAL_MS
    if interval <= 0:
        interval = SUBSCRIBE_DEFAULT_INTERVAL_MS
    return max(SUBSCRIBE_MIN_INTERVAL_MS, min(SUBSCRIBE_MAX_INTERVAL_MS, interval))


# ──────────────────────────────────────────────────────────────
#  Queue monitor subscription
# ──────────────────────────────────────────────────────────────

class QueueSubscription:
    """One periodic queue:update push per socket; replaced on resubscribe."""

    def __init__(self, websocket: WebSocket, queue: MessageQueueService):
        self.websocket = websocket
        self.queue = queue
        self._task: Optional[asyncio.Task] = None
        self.interval_ms = SUBSCRIBE_DEFAULT_INTERVAL_MS
        self.limit = 50

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def subscribe(self, params: Any) -> None:
        if isinstance(params, (int, float)) and not isinstance(params, bool):
            interval, limit = params, 50
        elif isinstance(params, dict):
            interval, limit = params.get("intervalMs"), params.get("limit", 50)
        else:
            interval, limit = None, 50
        await self.cancel()
        self.interval_ms = clamp_interval(interval)
        self.limit = clamp_limit(limit)
        self._task = asyncio.create_task(self._push())

    async def _push(self) -> None:
        while True:
            try:
                details = await self.queue.get_details(self.limit)
                payload = {"event": "queue:update", "data": details}
            except Exception as e:
                logger.error("queue_details_failed", error=str(e))
                payload = {"event": "queue:error", "message": "Failed to load queue details"}
            try:
                await self.websocket.send_json(payload)
            except Exception:
                return
            await asyncio.sleep(self.interval_ms / 1000)

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    queue: MessageQueueService = None,
    client: MessagingClient = None,
    store: MessageStore = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or MessageStore(settings.database, settings.debug)
    client = client or WhatsAppBridgeClient(settings.whatsapp)
    queue = queue or MessageQueueService(settings.queue)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.init()
        await client.connect()
        queue.attach(client, store)
        await queue.start()
        logger.info("gateway_started",
                    app_name=settings.app_name,
                    queue_backend=queue.method)
        yield
        await queue.close()
        await client.close()
        await store.close()
        logger.info("gateway_stopped")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    )
    app.state.queue = queue
    app.state.client = client
    app.state.store = store

    async def is_valid_key(api_key: Optional[str]) -> bool:
        if not api_key:
            return False
        if api_key in settings.api.api_keys:
            return True
        return await store.validate_api_key(api_key)

    async def require_api_key(request: Request, body_key: Optional[str] = None) -> None:
        api_key = body_key or request.headers.get("x-api-key") or request.query_params.get("apiKey")
        if not api_key:
            raise HTTPException(401, "API key is required")
        try:
            valid = await is_valid_key(api_key)
        except Exception as e:
            logger.error("api_key_validation_failed", error=str(e))
            raise HTTPException(500, "Error validating API key")
        if not valid:
            raise HTTPException(401, "Invalid API key")

    async def submit(kind: JobKind, target: str, message: str, delay: Optional[int]) -> JSONResponse:
        jid = normalize_target(kind, target)
        message_id = await store.log_message(
            jid, message, MessageDirection.SENT.value, MessageStatus.PENDING.value
        )
        if kind == JobKind.PRIVATE:
            result = await queue.enqueue_private(target, message, message_id, delay)
        else:
            result = await queue.enqueue_group(target, message, message_id, delay)

        if not result.get("success"):
            await store.update_message_status(message_id, MessageStatus.FAILED.value)
            logger.warning("message_rejected", kind=kind.value, message_id=message_id,
                           error=result.get("error"))
            return JSONResponse(status_code=503, content={
                "success": False,
                "message": result.get("error", "Message could not be queued"),
                "data": {"messageId": message_id, "queueResult": result},
            })

        return JSONResponse(content={
            "success": True,
            "message": f"{kind.value.capitalize()} message queued successfully",
            "data": {"messageId": message_id, "queueResult": result},
        })

    # ══════════════════════════════════════════════════════════
    #  HEALTH & SESSION
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        connected = client.is_connected or await client.connect()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queueBackend": queue.method,
            "whatsappConnected": connected,
        }

    @app.get("/api/status")
    async def whatsapp_status():
        await client.connect()
        return {"success": True, "data": client.get_connection_status()}

    @app.post("/api/disconnect")
    async def whatsapp_disconnect(request: Request):
        await require_api_key(request)
        disconnect = getattr(client, "disconnect", None)
        if disconnect is None:
            raise HTTPException(501, "Client does not support disconnect")
        try:
            await disconnect()
        except ChannelError as e:
            raise HTTPException(500, f"Error disconnecting WhatsApp: {e}")
        return {"success": True, "message": "WhatsApp disconnected successfully"}

    # ══════════════════════════════════════════════════════════
    #  SEND
    # ══════════════════════════════════════════════════════════

    @app.post("/api/send-private")
    async def send_private(req: SendPrivateRequest, request: Request):
        await require_api_key(request, req.api_key)
        return await submit(JobKind.PRIVATE, req.number, req.message, req.delay)

    @app.post("/api/send-group")
    async def send_group(req: SendGroupRequest, request: Request):
        await require_api_key(request, req.api_key)
        return await submit(JobKind.GROUP, req.group_id, req.message, req.delay)

    @app.get("/api/messages")
    async def list_messages(request: Request, limit: int = Query(50, ge=1, le=500)):
        await require_api_key(request)
        rows = await store.get_messages(limit)
        return {
            "success": True,
            "data": [MessageRecord.model_validate(row).model_dump(mode="json", by_alias=True) for row in rows],
        }

    # ══════════════════════════════════════════════════════════
    #  QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/queue-stats")
    async def queue_stats(request: Request):
        await require_api_key(request)
        try:
            stats = await queue.get_stats()
        except Exception as e:
            logger.error("queue_stats_failed", error=str(e))
            raise HTTPException(500, "Error fetching queue stats")
        return {"success": True, "data": stats}

    @app.get("/api/queue-details")
    async def queue_details(request: Request, limit: int = 50):
        await require_api_key(request)
        try:
            details = await queue.get_details(limit)
        except Exception as e:
            logger.error("queue_details_failed", error=str(e))
            raise HTTPException(500, "Error fetching queue details")
        return {"success": True, "data": details}

    @app.post("/api/queue/retry")
    async def queue_retry(req: RetryJobRequest, request: Request):
        await require_api_key(request, req.api_key)
        try:
            result = await queue.retry_job(req.queue, str(req.id))
        except JobNotFoundError as e:
            raise HTTPException(404, str(e))
        except RetryNotSupportedError as e:
            raise HTTPException(409, str(e))
        return {"success": True, "data": result}

    # ══════════════════════════════════════════════════════════
    #  QUEUE MONITOR WEBSOCKET
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws/queue")
    async def queue_monitor(websocket: WebSocket):
        """
        Client sends JSON events:
          {"event": "subscribe-queue", "intervalMs": 2000, "limit": 50}
          {"event": "unsubscribe-queue"}
          {"event": "queue:retry", "queue": "private", "id": "17"}
        Server pushes queue:update / queue:error / queue:retry:done.
        """
        await websocket.accept()

        api_key = websocket.query_params.get("apiKey", "")
        try:
            authorized = await is_valid_key(api_key)
        except Exception as e:
            logger.error("api_key_validation_failed", error=str(e))
            authorized = False
        if not authorized:
            await websocket.close(code=4003, reason="Authentication failed")
            return

        subscription = QueueSubscription(websocket, queue)
        try:
            while True:
                event = await websocket.receive_json()
                if not isinstance(event, dict):
                    continue
                name = event.get("event")

                if name == "subscribe-queue":
                    await subscription.subscribe(event.get("params", event))
                elif name == "unsubscribe-queue":
                    await subscription.cancel()
                elif name == "queue:retry":
                    try:
                        result = await queue.retry_job(event.get("queue"), event.get("id"))
                        await websocket.send_json({"event": "queue:retry:done", "ok": True, "result": result})
                    except Exception as e:
                        await websocket.send_json({
                            "event": "queue:retry:done", "ok": False,
                            "error": str(e) or "Retry failed",
                        })
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("queue_websocket_error", error=str(e))
        finally:
            await subscription.cancel()

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    _settings = get_settings()
    uvicorn.run(app, host=_settings.api.host, port=_settings.api.port)
