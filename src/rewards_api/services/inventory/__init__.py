from .allocator import ClaimQuote, InventoryAllocator, OwnedItem, is_expired
from .catalog import CatalogService, split_keys

__all__ = [
    "CatalogService",
    "ClaimQuote",
    "InventoryAllocator",
    "OwnedItem",
    "is_expired",
    "split_keys",
]
