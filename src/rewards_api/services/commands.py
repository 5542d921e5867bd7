"""Typed commands carried by slash commands and button callback data."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

CALLBACK_SEPARATOR = ":"


class CommandType(str, Enum):
    START = "start"
    HELP = "help"
    BALANCE = "balance"
    DAILY = "daily"
    REFERRAL_LINK = "referral"
    VERIFY_MEMBERSHIP = "verify"
    CATALOG = "catalog"
    SELECT_PRODUCT = "product"
    QUOTE = "quote"
    CLAIM = "claim"
    MY_KEYS = "keys"
    SUPPORT = "support"
    CANCEL_SUPPORT = "cancel"
    ACCEPT_SUPPORT = "accept"
    END_SUPPORT = "end"


@dataclass(frozen=True)
class Command:
    type: CommandType
    args: tuple[str, ...] = field(default_factory=tuple)


class UnknownCommand(ValueError):
    pass


def encode_callback(command: CommandType, *args: object) -> str:
    return CALLBACK_SEPARATOR.join([command.value, *(str(arg) for arg in args)])


def decode_callback(data: str) -> Command:
    name, *args = data.split(CALLBACK_SEPARATOR)
    try:
        return Command(CommandType(name), tuple(args))
    except ValueError as exc:
        raise UnknownCommand(data) from exc


def parse_command_text(text: str) -> Command:
    """Parse ``/name arg ...``; a ``@botname`` suffix on the command is ignored."""

    parts = text.strip().split()
    if not parts or not parts[0].startswith("/"):
        raise UnknownCommand(text)
    name = parts[0][1:].split("@", 1)[0].lower()
    try:
        return Command(CommandType(name), tuple(parts[1:]))
    except ValueError as exc:
        raise UnknownCommand(text) from exc
