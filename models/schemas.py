"""
Core data models for the dispatch gateway.
These are the universal types shared across the queue, persistence and API layers.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobKind(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MessageDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class QueueMethod(str, Enum):
    REDIS = "redis"
    REDIS_INITIALIZING = "redis-initializing"
    IN_MEMORY = "in-memory"


# ──────────────────────────────────────────────────────────────
#  Persistence records
# ──────────────────────────────────────────────────────────────

class MessageRecord(BaseModel):
    """A row of the message log as returned by /api/messages."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    jid: str
    message: str
    type: MessageDirection = MessageDirection.SENT
    status: MessageStatus = MessageStatus.PENDING
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


# ──────────────────────────────────────────────────────────────
#  API payloads
# ──────────────────────────────────────────────────────────────

class SendPrivateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    number: str = Field(min_length=1)
    message: str = Field(min_length=1)
    delay: Optional[int] = Field(default=None, ge=0)
    api_key: Optional[str] = Field(default=None, alias="apiKey")


class SendGroupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    group_id: str = Field(min_length=1, alias="groupId")
    message: str = Field(min_length=1)
    delay: Optional[int] = Field(default=None, ge=0)
    api_key: Optional[str] = Field(default=None, alias="apiKey")


class RetryJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queue: JobKind
    id: Union[int, str]
    api_key: Optional[str] = Field(default=None, alias="apiKey")

