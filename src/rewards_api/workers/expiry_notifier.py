"""Periodic sweep warning users about keys that are about to expire."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict

from loguru import logger

from rewards_api.core.errors import TransportError
from rewards_api.core.settings import settings
from rewards_api.models.inventory import InventoryItem
from rewards_api.services.inventory import CatalogService, InventoryAllocator
from rewards_api.services.transport import ChatTransport


class ExpiryNotifierWorker:
    """Sends one expiry warning per claimed key.

    The ``expiry_notified`` flag is flipped by CAS before sending, so overlapping
    sweeps (or several processes) never warn twice for the same key.
    """

    def __init__(
        self,
        allocator: InventoryAllocator,
        catalog: CatalogService,
        transport: ChatTransport,
        *,
        interval_seconds: int | None = None,
        window_hours: int | None = None,
    ) -> None:
        self._allocator = allocator
        self._catalog = catalog
        self._transport = transport
        self.interval_seconds = interval_seconds or settings.expiry_notifier_interval_seconds
        self._window = timedelta(hours=window_hours or settings.expiry_notifier_window_hours)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Expiry notifier worker started",
            interval_seconds=self.interval_seconds,
            window_hours=self._window.total_seconds() / 3600,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Expiry notifier worker stopped")

    async def run_once(self, *, now: datetime | None = None) -> Dict[str, int]:
        summary: Dict[str, int] = {"candidates": 0, "notified": 0, "skipped": 0, "failed": 0}
        items = await self._allocator.find_expiring(within=self._window, now=now)
        summary["candidates"] = len(items)

        for item in items:
            if not item.claimed_by or not await self._allocator.mark_expiry_notified(item.id):
                summary["skipped"] += 1
                continue
            try:
                await self._transport.send_message(item.claimed_by, await self._render(item))
            except TransportError as exc:
                summary["failed"] += 1
                logger.warning("Expiry warning not delivered", item_id=item.id, user_id=item.claimed_by, error=str(exc))
                continue
            summary["notified"] += 1

        logger.info("Expiry notifier sweep completed", **summary)
        return summary

    async def _render(self, item: InventoryItem) -> str:
        product = await self._catalog.get_product(item.product_id, include_deleted=True)
        name = product.name if product else item.product_id
        expires = item.expires_at.strftime("%Y-%m-%d %H:%M UTC") if item.expires_at else "soon"
        return (
            "⏰ *Key expiring soon*\n\n"
            f"Your {name} key ({item.duration_days}d) expires on {expires}.\n"
            "Earn more points to claim a new one."
        )

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Expiry notifier iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
