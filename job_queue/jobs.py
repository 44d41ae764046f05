"""
Job model — one message-delivery intent plus its identity.

Hash schema (durable backend, all values stored as strings):
  {
      "id":              backend-assigned job id,
      "kind":            private|group,
      "target":          recipient number / group id as submitted,
      "message":         body text,
      "message_id":      persistence-layer row id ("" when untracked),
      "delay_ms":        resolved per-job delay,
      "enqueued_at":     epoch ms at creation,
      "attempts_made":   completed delivery attempts,
      "processed_at":    epoch ms when the latest attempt started,
      "finished_at":     epoch ms when the job reached completed/failed,
      "failed_reason":   last failure message,
  }

Introspection views (view(), job_view_from_hash) are API-visible and use
camelCase keys: enqueuedAt, attemptsMade, data.messageId, ...
"""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from config.settings import DEFAULT_DELAY_MS
from models.schemas import JobKind

PRIVATE_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"

MessageId = Union[int, str]


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_target(kind: JobKind, target: str) -> str:
    """Append the network suffix unless the address already carries one."""
    target = str(target).strip()
    if "@" in target:
        return target
    suffix = GROUP_SUFFIX if JobKind(kind) == JobKind.GROUP else PRIVATE_SUFFIX
    return f"{target}{suffix}"


def resolve_delay(explicit: Optional[int], configured: Optional[int] = None) -> int:
    """
    Resolve the per-job delay in milliseconds.

    Precedence: explicit per-call value → configured default → 500 ms.
    An explicit value that is negative or not an integer is a caller error.
    """
    if explicit is not None:
        if isinstance(explicit, bool) or not isinstance(explicit, int):
            raise ValueError(f"delay must be an integer number of milliseconds, got {explicit!r}")
        if explicit < 0:
            raise ValueError(f"delay must be non-negative, got {explicit}")
        return explicit
    try:
        value = int(configured) if configured is not None else None
    except (TypeError, ValueError):
        value = None
    if value is None or value < 0:
        return DEFAULT_DELAY_MS
    return value


@dataclass(frozen=True)
class MessageJob:
    """A unit of work on the queue. Intent fields never change after creation."""
    kind: JobKind
    target: str
    message: str
    message_id: Optional[MessageId] = None
    delay_ms: int = DEFAULT_DELAY_MS
    job_id: str = ""
    enqueued_at: int = 0

    @classmethod
    def create(
        cls,
        kind: JobKind,
        target: str,
        message: str,
        message_id: Optional[MessageId] = None,
        delay_ms: int = DEFAULT_DELAY_MS,
    ) -> MessageJob:
        return cls(
            kind=JobKind(kind),
            target=target,
            message=message,
            message_id=message_id,
            delay_ms=delay_ms,
            enqueued_at=now_ms(),
        )

    def with_id(self, job_id: Any) -> MessageJob:
        return replace(self, job_id=str(job_id))

    def resubmission(self) -> MessageJob:
        """A brand-new job carrying the same intent (no id, fresh timestamp)."""
        return MessageJob.create(
            kind=self.kind,
            target=self.target,
            message=self.message,
            message_id=self.message_id,
            delay_ms=self.delay_ms,
        )

    @property
    def normalized_target(self) -> str:
        return normalize_target(self.kind, self.target)

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.job_id,
            "kind": self.kind.value,
            "target": self.target,
            "message": self.message,
            "message_id": "" if self.message_id is None else str(self.message_id),
            "delay_ms": str(self.delay_ms),
            "enqueued_at": str(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageJob:
        raw_mid = data.get("message_id")
        message_id: Optional[MessageId] = None
        if raw_mid not in (None, ""):
            message_id = int(raw_mid) if str(raw_mid).isdigit() else raw_mid
        return cls(
            kind=JobKind(data["kind"]),
            target=data.get("target", ""),
            message=data.get("message", ""),
            message_id=message_id,
            delay_ms=int(data.get("delay_ms") or 0),
            job_id=str(data.get("id", "")),
            enqueued_at=int(data.get("enqueued_at") or 0),
        )

    def view(self) -> dict[str, Any]:
        """Introspection shape for a pending job."""
        return {
            "id": self.job_id,
            "kind": self.kind.value,
            "enqueuedAt": self.enqueued_at,
            "data": {
                "target": self.target,
                "message": self.message,
                "messageId": self.message_id,
                "delayMs": self.delay_ms,
            },
        }


def _opt_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


def job_view_from_hash(data: dict[str, Any]) -> dict[str, Any]:
    """Introspection shape for a durable job, including progress fields."""
    job = MessageJob.from_dict(data)
    view = job.view()
    view.update({
        "attemptsMade": int(data.get("attempts_made") or 0),
        "processedAt": _opt_int(data.get("processed_at")),
        "finishedAt": _opt_int(data.get("finished_at")),
        "failedReason": data.get("failed_reason") or None,
    })
    return view


def sanitize_job(view: dict[str, Any], preview_chars: int = 120) -> dict[str, Any]:
    """Copy of a job view with the message body cut to `preview_chars`."""
    data = view.get("data")
    if not isinstance(data, dict):
        return dict(view)
    message = data.get("message")
    if isinstance(message, str) and len(message) > preview_chars:
        data = {**data, "message": message[:preview_chars]}
    return {**view, "data": data}
