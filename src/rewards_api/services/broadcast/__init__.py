from .coordinator import BroadcastCoordinator, CancellationToken

__all__ = ["BroadcastCoordinator", "CancellationToken"]
