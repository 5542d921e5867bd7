"""Chat transport boundary consumed by the rewards core."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from rewards_api.core.errors import RecipientUnreachable, TransportError


class InboundEventKind(str, Enum):
    MESSAGE = "message"
    COMMAND = "command"
    CALLBACK = "callback"


@dataclass(slots=True)
class InboundEvent:
    """Normalised user/admin action delivered by the transport."""

    kind: InboundEventKind
    sender_id: str
    chat_id: str
    text: str = ""
    sender_name: str = ""
    sender_username: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SendResult:
    recipient_id: str
    message_id: str | None = None


InboundCallback = Callable[[InboundEvent], Awaitable[None]]


class ChatTransport(Protocol):
    """Minimal protocol for the chat transport collaborator.

    ``send_message`` raises :class:`RecipientUnreachable` for permanent failures
    (recipient blocked the bot, chat gone) and :class:`TransportError` for
    anything that may succeed on retry.
    """

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        *,
        options: Optional[dict[str, Any]] = None,
    ) -> SendResult:
        ...

    def on_inbound_event(self, callback: InboundCallback) -> None:
        ...

    async def get_chat_membership(self, channel_id: str, user_id: str) -> bool:
        ...


class InMemoryTransport:
    """Records outbound messages and lets tests script failures and memberships."""

    def __init__(self, *, send_delay_seconds: float = 0.0) -> None:
        self.sent_messages: List[tuple[str, str, dict[str, Any]]] = []
        self.unreachable: set[str] = set()
        self.flaky: set[str] = set()
        self.memberships: dict[tuple[str, str], bool] = {}
        self.default_membership = True
        self.send_delay_seconds = send_delay_seconds
        self._callbacks: list[InboundCallback] = []

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        *,
        options: Optional[dict[str, Any]] = None,
    ) -> SendResult:
        if self.send_delay_seconds:
            await asyncio.sleep(self.send_delay_seconds)
        recipient = str(recipient_id)
        if recipient in self.unreachable:
            raise RecipientUnreachable(recipient, "bot was blocked by the user")
        if recipient in self.flaky:
            raise TransportError(f"temporary failure sending to {recipient}")
        self.sent_messages.append((recipient, text, dict(options or {})))
        return SendResult(recipient_id=recipient, message_id=str(len(self.sent_messages)))

    def on_inbound_event(self, callback: InboundCallback) -> None:
        self._callbacks.append(callback)

    async def deliver(self, event: InboundEvent) -> None:
        """Feed an inbound event to every registered callback."""

        for callback in self._callbacks:
            await callback(event)

    async def get_chat_membership(self, channel_id: str, user_id: str) -> bool:
        return self.memberships.get((str(channel_id), str(user_id)), self.default_membership)

    def messages_for(self, recipient_id: str) -> list[str]:
        return [text for recipient, text, _ in self.sent_messages if recipient == str(recipient_id)]
