from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RewardsSnapshot:
    ledger: Dict[str, int]
    claims: Dict[str, int]
    referrals: Dict[str, int]
    broadcasts: Dict[str, int]
    support: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "claims": dict(self.claims),
            "referrals": dict(self.referrals),
            "broadcasts": dict(self.broadcasts),
            "support": dict(self.support),
        }


class RewardsObservabilityStore:
    """Process-local counters for the ledger, allocator, broadcasts and support router."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._claims: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._broadcasts: Dict[str, int] = defaultdict(int)
        self._support: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, event: str, *, cas_attempts: int = 1) -> None:
        with self._lock:
            self._ledger[event] += 1
            if cas_attempts > 1:
                self._ledger["cas_retries"] += cas_attempts - 1

    def record_claim(self, outcome: str) -> None:
        with self._lock:
            self._claims[outcome] += 1

    def record_claim_conflict(self) -> None:
        with self._lock:
            self._claims["cas_conflicts"] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_broadcast_event(self, event: str, count: int = 1) -> None:
        with self._lock:
            self._broadcasts[event] += count

    def record_support_event(self, event: str) -> None:
        with self._lock:
            self._support[event] += 1

    def snapshot(self) -> RewardsSnapshot:
        with self._lock:
            return RewardsSnapshot(
                ledger=dict(self._ledger),
                claims=dict(self._claims),
                referrals=dict(self._referrals),
                broadcasts=dict(self._broadcasts),
                support=dict(self._support),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._claims.clear()
            self._referrals.clear()
            self._broadcasts.clear()
            self._support.clear()


_STORE = RewardsObservabilityStore()


def get_rewards_store() -> RewardsObservabilityStore:
    return _STORE


__all__ = ["get_rewards_store", "RewardsObservabilityStore", "RewardsSnapshot"]
