"""Data models for chat events and chat commands.

A ``ChatEvent`` is the transport-independent view of one chat message, produced by both
the webhook and the WebSocket ingress. Command table entries and command results are
small tagged variants that the router tells apart by type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


__all__: list[str] = [
    "Badge",
    "ChatEvent",
    "ChatUser",
    "CommandContext",
    "CommandEntry",
    "CommandHandler",
    "CommandResult",
    "DynamicCommand",
    "NoReply",
    "ParsedCommand",
    "Reply",
    "StaticCommand",
    "ThreadedReply",
]


@dataclass(frozen=True)
class Badge:
    """Chat badge. ``set_id`` names the badge kind (``moderator``, ``broadcaster``, ``vip``...)."""

    set_id: str
    id: str = ""
    info: str = ""


@dataclass(frozen=True)
class ChatUser:
    """A Twitch user as seen in chat."""

    id: str
    login: str = ""
    name: str = ""


@dataclass(frozen=True)
class ChatEvent:
    """One chat message delivered to a bot.

    Attributes:
        message_id (str): Twitch message id; replies thread under it.
        broadcaster (ChatUser): Owner of the channel the message was sent in.
        chatter (ChatUser): Sender of the message.
        text (str): Plain message text.
        badges (tuple[Badge, ...]): Badges of the chatter in this channel.
    """

    message_id: str
    broadcaster: ChatUser
    chatter: ChatUser
    text: str
    badges: tuple[Badge, ...] = ()

    def has_badge(self, *set_ids: str) -> bool:
        return any(badge.set_id in set_ids for badge in self.badges)


@dataclass(frozen=True)
class ParsedCommand:
    """Command name (lowercase, prefix removed) and its argument text."""

    name: str
    argument: str = ""


@dataclass(frozen=True)
class CommandContext:
    """Everything a dynamic command handler gets to see."""

    argument: str
    chatter: ChatUser
    broadcaster: ChatUser
    badges: tuple[Badge, ...]
    message_id: str
    event: ChatEvent | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class NoReply:
    """The command produced no chat output."""


@dataclass(frozen=True)
class Reply:
    """Send ``text`` to the channel as a plain message."""

    text: str


@dataclass(frozen=True)
class ThreadedReply:
    """Send ``text`` as a reply threaded under ``parent_id``."""

    text: str
    parent_id: str


type CommandResult = NoReply | Reply | ThreadedReply
type CommandHandler = Callable[[CommandContext], CommandResult | Awaitable[CommandResult]]


@dataclass(frozen=True)
class StaticCommand:
    """Command that always answers with the same text."""

    text: str


@dataclass(frozen=True)
class DynamicCommand:
    """Command computed by a handler, which may be sync or async."""

    handler: CommandHandler
    description: str = ""

    def __call__(self, context: CommandContext) -> Any:
        return self.handler(context)


type CommandEntry = StaticCommand | DynamicCommand
