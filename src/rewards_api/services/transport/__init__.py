"""Chat transport adapters."""

from .backend import (
    ChatTransport,
    InboundCallback,
    InboundEvent,
    InboundEventKind,
    InMemoryTransport,
    SendResult,
)

__all__ = [
    "ChatTransport",
    "InboundCallback",
    "InboundEvent",
    "InboundEventKind",
    "InMemoryTransport",
    "SendResult",
]
