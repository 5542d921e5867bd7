from rewards_api.models.broadcast import (
    TERMINAL_BROADCAST_STATUSES,
    BroadcastJob,
    BroadcastSegment,
    BroadcastStatus,
)
from rewards_api.models.common import from_iso, to_iso, utcnow
from rewards_api.models.inventory import DEFAULT_PRICE_TABLE, InventoryItem, ItemStatus, Product
from rewards_api.models.support import (
    SupportSession,
    SupportStatus,
    Transcript,
    TranscriptEntry,
    TranscriptSender,
)
from rewards_api.models.user import StaffMember, User, VipTier

__all__ = [
    "BroadcastJob",
    "BroadcastSegment",
    "BroadcastStatus",
    "DEFAULT_PRICE_TABLE",
    "InventoryItem",
    "ItemStatus",
    "Product",
    "StaffMember",
    "SupportSession",
    "SupportStatus",
    "TERMINAL_BROADCAST_STATUSES",
    "Transcript",
    "TranscriptEntry",
    "TranscriptSender",
    "User",
    "VipTier",
    "from_iso",
    "to_iso",
    "utcnow",
]
