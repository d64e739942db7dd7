"""Chat command parsing, authorization and dispatch."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, Final

from models.command_models import (
    CommandContext,
    DynamicCommand,
    NoReply,
    ParsedCommand,
    Reply,
    StaticCommand,
    ThreadedReply,
)
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Awaitable, Callable, Mapping

    from models.command_models import ChatEvent, CommandEntry, CommandResult

    type MissingCommandResolver = Callable[
        [ParsedCommand, CommandContext], CommandResult | None | Awaitable[CommandResult | None]
    ]


__all__: list[str] = [
    "DEFAULT_PREFIX",
    "DYNAMIC_COMMAND_TEXT",
    "PRIVILEGED_BADGES",
    "CommandRouter",
    "is_privileged",
    "parse_command",
]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

DEFAULT_PREFIX: Final[str] = "!"
PRIVILEGED_BADGES: Final[tuple[str, ...]] = ("moderator", "broadcaster")
DYNAMIC_COMMAND_TEXT: Final[str] = "[ Dynamic command action. ]"


def parse_command(text: str, prefix: str = DEFAULT_PREFIX) -> ParsedCommand | None:
    """Split chat text into a command name and its argument.

    The text is split on whitespace. The first token must start with ``prefix``; the
    name is that token without the prefix, lowercased, and the argument is the remaining
    tokens joined by single spaces.

    Example:
        >>> parse_command("!addcommand !hi hello there")
        ParsedCommand(name='addcommand', argument='!hi hello there')
        >>> parse_command("no prefix here") is None
        True

    Args:
        text (str): Chat message text.
        prefix (str): Command prefix.

    Returns:
        ParsedCommand | None: The command, or None if the text is not a command.
    """
    tokens: list[str] = text.split()
    if not tokens or not tokens[0].startswith(prefix):
        return None

    name: str = tokens[0][len(prefix) :].lower()
    # a lone prefix is chat, not a lookup of the empty name
    if not name:
        return None
    return ParsedCommand(name=name, argument=" ".join(tokens[1:]))


def is_privileged(event: ChatEvent | CommandContext) -> bool:
    """Whether the sender may run moderator commands.

    True for the broadcaster (chatter id equals broadcaster id) and for anyone wearing
    a ``moderator`` or ``broadcaster`` badge.
    """
    if event.chatter.id == event.broadcaster.id:
        return True
    return any(badge.set_id in PRIVILEGED_BADGES for badge in event.badges)


class CommandRouter:
    """Command table of one bot identity.

    Args:
        commands (Mapping[str, CommandEntry] | None): Initial table; names are lowercased.
        prefix (str): Command prefix.
        on_command_missing (MissingCommandResolver | None): Consulted for names that are not
            in the table. Returning None means no reply.
        log (logging.Logger | logging.LoggerAdapter | None): Logger, usually identity-prefixed.
    """

    def __init__(
        self,
        commands: Mapping[str, CommandEntry] | None = None,
        *,
        prefix: str = DEFAULT_PREFIX,
        on_command_missing: MissingCommandResolver | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.prefix: str = prefix
        self.commands: dict[str, CommandEntry] = {}
        self.on_command_missing: MissingCommandResolver | None = on_command_missing
        self._log: logging.Logger | logging.LoggerAdapter = log or logger
        for name, entry in (commands or {}).items():
            self.add(name, entry)

    def add(self, name: str, entry: CommandEntry) -> None:
        """Add or replace a command. ``name`` is given without the prefix."""
        self.commands[name.removeprefix(self.prefix).lower()] = entry

    def remove(self, name: str) -> bool:
        return self.commands.pop(name.removeprefix(self.prefix).lower(), None) is not None

    def list_commands(self) -> list[tuple[str, str]]:
        """Return ``(name, text)`` pairs; dynamic commands show a placeholder text."""
        return [
            (name, entry.text if isinstance(entry, StaticCommand) else DYNAMIC_COMMAND_TEXT)
            for name, entry in self.commands.items()
        ]

    async def dispatch(self, event: ChatEvent) -> CommandResult:
        """Resolve a chat event to the reply it should produce.

        Args:
            event (ChatEvent): The incoming chat message.

        Returns:
            CommandResult: ``NoReply`` unless a command produced output.
        """
        text: str = event.text.strip()
        if not text:
            return NoReply()
        parsed: ParsedCommand | None = parse_command(text, self.prefix)
        if parsed is None:
            return NoReply()

        self._log.debug("Command detected: %s %r", parsed.name, parsed.argument)
        context = CommandContext(
            argument=parsed.argument,
            chatter=event.chatter,
            broadcaster=event.broadcaster,
            badges=event.badges,
            message_id=event.message_id,
            event=event,
        )

        entry: CommandEntry | None = self.commands.get(parsed.name)
        if entry is None:
            self._log.debug("Invalid command: %s%s", self.prefix, parsed.name)
            if self.on_command_missing is None:
                return NoReply()
            return await self._invoke(f"missing:{parsed.name}", self.on_command_missing, parsed, context)

        if isinstance(entry, StaticCommand):
            return Reply(entry.text)
        if isinstance(entry, DynamicCommand):
            return await self._invoke(parsed.name, entry.handler, context)

        self._log.error("Unsupported command entry for %s: %r", parsed.name, entry)
        return NoReply()

    async def _invoke(self, label: str, handler: Callable[..., Any], *args: Any) -> CommandResult:
        try:
            result: Any = handler(*args)
            if inspect.isawaitable(result):
                result = await result
        except Exception:  # noqa: BLE001
            self._log.exception("Command handler '%s' raised", label)
            return NoReply()
        return self._normalize(label, result)

    def _normalize(self, label: str, result: Any) -> CommandResult:
        """Accept None as NoReply and a plain string as Reply."""
        if result is None:
            return NoReply()
        if isinstance(result, (NoReply, Reply, ThreadedReply)):
            return result
        if isinstance(result, str):
            return Reply(result)
        self._log.error("Command handler '%s' returned unsupported result: %r", label, result)
        return NoReply()
