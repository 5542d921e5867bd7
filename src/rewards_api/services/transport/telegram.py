"""Telegram Bot API transport built on python-telegram-bot."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Optional

from loguru import logger
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatMemberStatus, ParseMode
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TelegramError

from rewards_api.core.errors import RecipientUnreachable, TransportError
from rewards_api.core.settings import Settings
from rewards_api.services.transport.backend import (
    InboundCallback,
    InboundEvent,
    InboundEventKind,
    SendResult,
)

_MEMBER_STATUSES = {
    ChatMemberStatus.MEMBER,
    ChatMemberStatus.ADMINISTRATOR,
    ChatMemberStatus.OWNER,
}
_UNREACHABLE_MARKERS = ("chat not found", "user is deactivated", "bot was blocked")


class TelegramTransport:
    """Sends through the Bot API and long-polls updates into registered callbacks."""

    MAX_ATTEMPTS = 3
    RETRY_DELAY_SECONDS = 1.0

    def __init__(self, bot: Bot, *, poll_timeout_seconds: int = 30) -> None:
        self._bot = bot
        self._callbacks: list[InboundCallback] = []
        self._poll_timeout = poll_timeout_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    @classmethod
    def from_settings(cls, config: Settings) -> "TelegramTransport":
        if not config.telegram_bot_token:
            raise ValueError("telegram_bot_token must be configured for the Telegram transport")
        return cls(Bot(token=config.telegram_bot_token))

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        *,
        options: Optional[dict[str, Any]] = None,
    ) -> SendResult:
        options = options or {}
        kwargs: dict[str, Any] = {"parse_mode": options.get("parse_mode", ParseMode.MARKDOWN)}
        buttons = options.get("buttons")
        if buttons:
            kwargs["reply_markup"] = InlineKeyboardMarkup(
                [[InlineKeyboardButton(text=label, callback_data=data) for label, data in row] for row in buttons]
            )

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                message = await self._bot.send_message(chat_id=recipient_id, text=text, **kwargs)
                return SendResult(recipient_id=str(recipient_id), message_id=str(message.message_id))
            except Forbidden as exc:
                raise RecipientUnreachable(str(recipient_id), exc.message) from exc
            except BadRequest as exc:
                if any(marker in exc.message.lower() for marker in _UNREACHABLE_MARKERS):
                    raise RecipientUnreachable(str(recipient_id), exc.message) from exc
                raise TransportError(f"Telegram rejected message to {recipient_id}: {exc.message}") from exc
            except RetryAfter as exc:
                delay = exc.retry_after.total_seconds() if isinstance(exc.retry_after, timedelta) else float(exc.retry_after)
                logger.warning("Telegram flood control", recipient=str(recipient_id), retry_after=delay, attempt=attempt)
                if attempt >= self.MAX_ATTEMPTS:
                    raise TransportError(f"Flood control persisted for {recipient_id}") from exc
                await asyncio.sleep(delay)
            except (NetworkError, TelegramError) as exc:
                logger.warning("Telegram send failed", recipient=str(recipient_id), attempt=attempt, error=str(exc))
                if attempt >= self.MAX_ATTEMPTS:
                    raise TransportError(f"Telegram send to {recipient_id} failed: {exc}") from exc
                await asyncio.sleep(self.RETRY_DELAY_SECONDS * attempt)
        raise TransportError(f"Telegram send to {recipient_id} failed")  # pragma: no cover

    def on_inbound_event(self, callback: InboundCallback) -> None:
        self._callbacks.append(callback)

    async def get_chat_membership(self, channel_id: str, user_id: str) -> bool:
        try:
            member = await self._bot.get_chat_member(chat_id=channel_id, user_id=int(user_id))
        except TelegramError as exc:
            logger.warning("Channel membership lookup failed", channel=channel_id, user_id=user_id, error=str(exc))
            return False
        return member.status in _MEMBER_STATUSES

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        await self._bot.initialize()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop())
        self.is_running = True
        logger.info("Telegram transport polling started", poll_timeout=self._poll_timeout)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.is_running = False
        await self._bot.shutdown()
        logger.info("Telegram transport polling stopped")

    async def _poll_loop(self) -> None:
        offset: int | None = None
        while not self._stop_event.is_set():
            try:
                updates = await self._bot.get_updates(offset=offset, timeout=self._poll_timeout)
            except TelegramError as exc:
                logger.warning("Telegram polling failed", error=str(exc))
                await asyncio.sleep(self.RETRY_DELAY_SECONDS)
                continue
            for update in updates:
                offset = update.update_id + 1
                event = normalize_update(update)
                if event is None:
                    continue
                for callback in self._callbacks:
                    try:
                        await callback(event)
                    except Exception as exc:  # pragma: no cover
                        logger.exception("Inbound event handler failed", sender=event.sender_id, error=str(exc))


def normalize_update(update: Update) -> InboundEvent | None:
    """Convert a Telegram update into the transport-neutral event shape."""

    if update.callback_query is not None:
        query = update.callback_query
        user = query.from_user
        chat_id = query.message.chat.id if query.message else user.id
        return InboundEvent(
            kind=InboundEventKind.CALLBACK,
            sender_id=str(user.id),
            chat_id=str(chat_id),
            text=query.data or "",
            sender_name=user.first_name or "",
            sender_username=user.username,
        )

    message = update.effective_message
    user = update.effective_user
    if message is None or user is None or message.text is None:
        return None
    kind = InboundEventKind.COMMAND if message.text.startswith("/") else InboundEventKind.MESSAGE
    return InboundEvent(
        kind=kind,
        sender_id=str(user.id),
        chat_id=str(message.chat.id),
        text=message.text,
        sender_name=user.first_name or "",
        sender_username=user.username,
    )
