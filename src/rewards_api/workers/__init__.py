"""Periodic background sweeps run inside the API process."""

from .expiry_notifier import ExpiryNotifierWorker

__all__ = ["ExpiryNotifierWorker"]
