from rewards_api.observability.rewards import RewardsObservabilityStore, RewardsSnapshot, get_rewards_store

__all__ = ["RewardsObservabilityStore", "RewardsSnapshot", "get_rewards_store"]
