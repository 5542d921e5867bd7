from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from rewards_api.models.common import from_iso, to_iso, utcnow

DEFAULT_PRICE_TABLE: dict[int, int] = {1: 3, 3: 6, 7: 10, 15: 15, 30: 20}


class ItemStatus(str, Enum):
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    DELETED = "deleted"


@dataclass
class Product:
    """Claimable product with a per-duration point price table."""

    id: str
    name: str
    prices: dict[int, int] = field(default_factory=lambda: dict(DEFAULT_PRICE_TABLE))
    active: bool = True
    download_link: str | None = None
    created_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    def price_for(self, duration_days: int) -> int | None:
        return self.prices.get(int(duration_days))

    @classmethod
    def from_record(cls, product_id: str, record: dict[str, Any]) -> "Product":
        raw_prices = record.get("prices") or {}
        return cls(
            id=product_id,
            name=record.get("name") or product_id,
            prices={int(days): int(cost) for days, cost in raw_prices.items()},
            active=bool(record.get("active", True)),
            download_link=record.get("download_link"),
            created_at=from_iso(record.get("created_at")),
            deleted_at=from_iso(record.get("deleted_at")),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            # JSON object keys are strings; keep them sorted numerically for readability.
            "prices": {str(days): cost for days, cost in sorted(self.prices.items())},
            "active": self.active,
            "download_link": self.download_link,
            "created_at": to_iso(self.created_at),
            "deleted_at": to_iso(self.deleted_at),
        }


@dataclass
class InventoryItem:
    """A single-use key. Once claimed it belongs to exactly one user."""

    id: str
    product_id: str
    duration_days: int
    payload: str
    status: ItemStatus = ItemStatus.UNCLAIMED
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    expires_at: datetime | None = None
    added_at: datetime | None = None
    expiry_notified: bool = False

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    @classmethod
    def from_record(cls, item_id: str, record: dict[str, Any]) -> "InventoryItem":
        return cls(
            id=item_id,
            product_id=record["product_id"],
            duration_days=int(record["duration_days"]),
            payload=record.get("payload") or "",
            status=ItemStatus(record.get("status") or ItemStatus.UNCLAIMED.value),
            claimed_by=record.get("claimed_by"),
            claimed_at=from_iso(record.get("claimed_at")),
            expires_at=from_iso(record.get("expires_at")),
            added_at=from_iso(record.get("added_at")),
            expiry_notified=bool(record.get("expiry_notified", False)),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "duration_days": self.duration_days,
            "payload": self.payload,
            "status": self.status.value,
            "claimed_by": self.claimed_by,
            "claimed_at": to_iso(self.claimed_at),
            "expires_at": to_iso(self.expires_at),
            "added_at": to_iso(self.added_at),
            "expiry_notified": self.expiry_notified,
        }
