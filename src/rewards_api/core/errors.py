"""Typed failures raised by the rewards core.

Engines raise these instead of returning sentinel values so the transport layer
can tell the user *why* an action failed (out of stock vs. not enough points).
"""

from __future__ import annotations


class RewardsError(Exception):
    """Base class for all domain failures."""

    code = "rewards_error"


class StoreUnavailable(RewardsError):
    """The key-value store kept failing after the retry envelope was exhausted."""

    code = "store_unavailable"


class Contention(RewardsError):
    """Optimistic retries were exhausted; the caller should re-present the request."""

    code = "contention"

    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(f"CAS contention on {path} after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class UserNotFound(RewardsError):
    code = "user_not_found"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} is not registered")
        self.user_id = user_id


class ProductNotFound(RewardsError):
    code = "product_not_found"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} does not exist")
        self.product_id = product_id


class BroadcastNotFound(RewardsError):
    code = "broadcast_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Broadcast job {job_id} does not exist")
        self.job_id = job_id


class InsufficientBalance(RewardsError):
    code = "insufficient_balance"

    def __init__(self, user_id: str, required: int, available: int) -> None:
        super().__init__(f"User {user_id} needs {required} points but has {available}")
        self.user_id = user_id
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


class OutOfStock(RewardsError):
    code = "out_of_stock"

    def __init__(self, product_id: str, duration_days: int) -> None:
        super().__init__(f"No unclaimed {duration_days}-day keys left for product {product_id}")
        self.product_id = product_id
        self.duration_days = duration_days


class FeatureDisabled(RewardsError):
    code = "feature_disabled"

    def __init__(self, feature: str) -> None:
        super().__init__(f"{feature} is disabled")
        self.feature = feature


class DailyRewardCooldown(RewardsError):
    code = "daily_reward_cooldown"

    def __init__(self, hours_remaining: int) -> None:
        super().__init__(f"Daily reward available again in {hours_remaining}h")
        self.hours_remaining = hours_remaining


# Support session state violations. Never retried.


class SupportStateError(RewardsError):
    code = "support_state"


class AlreadyPending(SupportStateError):
    code = "already_pending"


class AlreadyActive(SupportStateError):
    code = "already_active"


class RequestStale(SupportStateError):
    code = "request_stale"


class NoActiveSession(SupportStateError):
    code = "no_active_session"


class NotAuthorized(SupportStateError):
    code = "not_authorized"


# Chat transport classification.


class TransportError(RewardsError):
    """Generic, possibly transient, failure talking to the chat transport."""

    code = "transport_error"


class RecipientUnreachable(TransportError):
    """Permanent failure: the recipient blocked the bot or the chat no longer exists."""

    code = "recipient_unreachable"

    def __init__(self, recipient_id: str, reason: str | None = None) -> None:
        super().__init__(f"Recipient {recipient_id} is unreachable" + (f": {reason}" if reason else ""))
        self.recipient_id = recipient_id
        self.reason = reason


__all__ = [
    "AlreadyActive",
    "AlreadyPending",
    "BroadcastNotFound",
    "Contention",
    "DailyRewardCooldown",
    "FeatureDisabled",
    "InsufficientBalance",
    "NoActiveSession",
    "NotAuthorized",
    "OutOfStock",
    "ProductNotFound",
    "RecipientUnreachable",
    "RequestStale",
    "RewardsError",
    "StoreUnavailable",
    "SupportStateError",
    "TransportError",
    "UserNotFound",
]
