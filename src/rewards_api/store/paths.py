"""Path scheme for entities persisted in the key-value store."""

from __future__ import annotations

USERS = "users"
PRODUCTS = "products"
INVENTORY = "inventory"
BROADCAST_JOBS = "broadcastJobs"
SUPPORT_SESSIONS = "supportSessions"
TRANSCRIPTS = "transcripts"
STAFF = "staff"
LEDGER = "ledger"
RUNTIME_SETTINGS = "settings/runtime"
SEQUENCES = "sequences"


def user(user_id: str) -> str:
    return f"{USERS}/{user_id}"


def product(product_id: str) -> str:
    return f"{PRODUCTS}/{product_id}"


def inventory_item(item_id: str) -> str:
    return f"{INVENTORY}/{item_id}"


def broadcast_job(job_id: str) -> str:
    return f"{BROADCAST_JOBS}/{job_id}"


def support_session(user_id: str) -> str:
    return f"{SUPPORT_SESSIONS}/{user_id}"


def transcript(transcript_id: str) -> str:
    return f"{TRANSCRIPTS}/{transcript_id}"


def staff_member(staff_id: str) -> str:
    return f"{STAFF}/{staff_id}"


def ledger_entries(user_id: str) -> str:
    return f"{LEDGER}/{user_id}"


def ledger_entry(user_id: str, entry_id: str) -> str:
    return f"{LEDGER}/{user_id}/{entry_id}"


def sequence(name: str) -> str:
    return f"{SEQUENCES}/{name}"


# Sorted-set indexes (score = insertion timestamp).


def pool_index(product_id: str, duration_days: int) -> str:
    """Unclaimed items of one product/duration class, oldest first."""

    return f"inventory:{product_id}:{duration_days}"


def product_items_index(product_id: str) -> str:
    return f"product-items:{product_id}"


def user_items_index(user_id: str) -> str:
    return f"user-items:{user_id}"


def claimed_items_index() -> str:
    return "claimed-items"


def completed_transcripts_index() -> str:
    return "transcripts-completed"
