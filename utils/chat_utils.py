"""Helpers for outgoing chat text.

Twitch rejects chat messages longer than 500 characters, so replies produced by commands
are clipped here before they reach the send endpoint.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging

__all__: list[str] = ["MAX_CHAT_MESSAGE_LENGTH", "ChatUtils"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

MAX_CHAT_MESSAGE_LENGTH: Final[int] = 500
SHORTEST_MESSAGE_LENGTH: Final[int] = 20


class ChatUtils:
    """Chat text utilities shared by the bot engine and the command handlers."""

    @staticmethod
    def normalize_whitespace(content: str | None) -> str:
        """Collapse runs of whitespace into single spaces and strip both ends."""
        if not content:
            return ""
        return " ".join(content.split())

    @staticmethod
    def truncate_message(
        content: str | None,
        limit_length: int = MAX_CHAT_MESSAGE_LENGTH,
        *,
        header: str | None = None,
        footer: str | None = None,
    ) -> str:
        """Truncate a message so that header + content + footer fits into ``limit_length``.

        Only the content is shortened; header and footer are kept intact. If the
        header and footer leave no reasonable room, the content keeps at least
        ``SHORTEST_MESSAGE_LENGTH`` characters and a warning is logged.

        Args:
            content (str | None): The message content.
            limit_length (int): Maximum number of characters of the combined message.
            header (str | None): Optional prefix.
            footer (str | None): Optional suffix.

        Returns:
            str: The combined, possibly truncated message.
        """
        _content: str = content or ""
        _header: str = header or ""
        _footer: str = footer or ""
        _ellipsis: str = " ..."

        if len(_content) + len(_header) + len(_footer) <= limit_length:
            return f"{_header}{_content}{_footer}"

        limit: int = limit_length - len(_header) - len(_footer) - len(_ellipsis)
        if limit < SHORTEST_MESSAGE_LENGTH:
            logger.warning(
                "The message cannot be truncated to the specified length. "
                "Either increase the length limit or shorten the header/footer."
            )
            limit = SHORTEST_MESSAGE_LENGTH

        return f"{_header}{_content[:limit]}{_ellipsis}{_footer}"
