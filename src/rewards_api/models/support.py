from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from rewards_api.models.common import from_iso, to_iso


class SupportStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"

    @property
    def is_open(self) -> bool:
        return self in {SupportStatus.PENDING, SupportStatus.ACTIVE}


class TranscriptSender(str, Enum):
    USER = "user"
    STAFF = "staff"


@dataclass
class SupportSession:
    """Pairing state for one user, stored under ``supportSessions/{user_id}``."""

    user_id: str
    status: SupportStatus = SupportStatus.NONE
    request_id: int = 0
    staff_id: str | None = None
    staff_name: str | None = None
    transcript_id: str | None = None
    requested_at: datetime | None = None
    accepted_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_record(cls, user_id: str, record: dict[str, Any] | None) -> "SupportSession":
        if not record:
            return cls(user_id=user_id)
        return cls(
            user_id=user_id,
            status=SupportStatus(record.get("status") or SupportStatus.NONE.value),
            request_id=int(record.get("request_id") or 0),
            staff_id=record.get("staff_id"),
            staff_name=record.get("staff_name"),
            transcript_id=record.get("transcript_id"),
            requested_at=from_iso(record.get("requested_at")),
            accepted_at=from_iso(record.get("accepted_at")),
            ended_at=from_iso(record.get("ended_at")),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "request_id": self.request_id,
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "transcript_id": self.transcript_id,
            "requested_at": to_iso(self.requested_at),
            "accepted_at": to_iso(self.accepted_at),
            "ended_at": to_iso(self.ended_at),
        }


@dataclass
class TranscriptEntry:
    sender: TranscriptSender
    sender_id: str
    text: str
    timestamp: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "sender": self.sender.value,
            "sender_id": self.sender_id,
            "text": self.text,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TranscriptEntry":
        return cls(
            sender=TranscriptSender(record["sender"]),
            sender_id=str(record["sender_id"]),
            text=record.get("text") or "",
            timestamp=from_iso(record["timestamp"]),  # type: ignore[arg-type]
        )


@dataclass
class Transcript:
    id: str
    user_id: str
    staff_id: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    entries: list[TranscriptEntry] = field(default_factory=list)

    @classmethod
    def from_record(cls, transcript_id: str, record: dict[str, Any]) -> "Transcript":
        return cls(
            id=transcript_id,
            user_id=record["user_id"],
            staff_id=record["staff_id"],
            started_at=from_iso(record.get("started_at")),
            ended_at=from_iso(record.get("ended_at")),
            entries=[TranscriptEntry.from_record(entry) for entry in record.get("entries") or []],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "staff_id": self.staff_id,
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at),
            "entries": [entry.to_record() for entry in self.entries],
        }
