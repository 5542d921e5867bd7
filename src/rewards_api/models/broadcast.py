from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from rewards_api.models.common import from_iso, to_iso


class BroadcastSegment(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    VIP = "vip"


class BroadcastStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_BROADCAST_STATUSES


TERMINAL_BROADCAST_STATUSES = frozenset(
    {BroadcastStatus.COMPLETED, BroadcastStatus.CANCELLED, BroadcastStatus.FAILED}
)


@dataclass
class BroadcastJob:
    id: str
    segment: BroadcastSegment
    message: str
    total: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    status: BroadcastStatus = BroadcastStatus.PENDING
    cancel_requested: bool = False
    created_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_record(cls, job_id: str, record: dict[str, Any]) -> "BroadcastJob":
        return cls(
            id=job_id,
            segment=BroadcastSegment(record.get("segment") or BroadcastSegment.ALL.value),
            message=record.get("message") or "",
            total=int(record.get("total") or 0),
            sent=int(record.get("sent") or 0),
            delivered=int(record.get("delivered") or 0),
            failed=int(record.get("failed") or 0),
            status=BroadcastStatus(record.get("status") or BroadcastStatus.PENDING.value),
            cancel_requested=bool(record.get("cancel_requested", False)),
            created_at=from_iso(record.get("created_at")),
            completed_at=from_iso(record.get("completed_at")),
            error=record.get("error"),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "segment": self.segment.value,
            "message": self.message,
            "total": self.total,
            "sent": self.sent,
            "delivered": self.delivered,
            "failed": self.failed,
            "status": self.status.value,
            "cancel_requested": self.cancel_requested,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
            "error": self.error,
        }
