"""Delivery deduplication for webhook notifications.

Twitch retries a webhook delivery until it sees a 2xx, reusing the same message id. The
guard records every id once; the first writer wins and later deliveries of the id are
reported as replays. Records expire after ``retention`` seconds.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Final

from core.token_storage import SQLiteStorage
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    import sqlite3
    from collections.abc import Callable
    from pathlib import Path


__all__: list[str] = ["DEFAULT_RETENTION_SEC", "ReplayCheck", "ReplayGuard"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

# Twitch stops retrying a delivery well within ten minutes.
DEFAULT_RETENTION_SEC: Final[float] = 600.0


@dataclass(frozen=True)
class ReplayCheck:
    is_new: bool


class ReplayGuard(SQLiteStorage):
    """Durable set of seen EventSub message ids."""

    SCHEMA: ClassVar[tuple[str, ...]] = (
        """
        CREATE TABLE IF NOT EXISTS eventsub_messages (
            event_id TEXT PRIMARY KEY,
            message_timestamp TEXT NOT NULL,
            first_seen REAL NOT NULL,
            expires_at REAL NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_eventsub_messages_expires ON eventsub_messages(expires_at)",
    )

    def __init__(
        self,
        db_path: str | Path,
        *,
        retention: float = DEFAULT_RETENTION_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(db_path)
        self.retention: float = retention
        self._clock: Callable[[], float] = clock

    async def check_and_mark(self, event_id: str, message_timestamp: str) -> ReplayCheck:
        """Record ``event_id`` if it has not been seen.

        The insert is a single conditional statement, so two concurrent deliveries of
        the same id cannot both be reported as new.

        Args:
            event_id (str): Value of the ``Twitch-Eventsub-Message-Id`` header.
            message_timestamp (str): Value of the ``Twitch-Eventsub-Message-Timestamp`` header.

        Returns:
            ReplayCheck: ``is_new`` is False for a replay.
        """
        now: float = self._clock()
        cursor: sqlite3.Cursor = self.connection.execute(
            """
            INSERT OR IGNORE INTO eventsub_messages (event_id, message_timestamp, first_seen, expires_at)
            VALUES (?, ?, ?, ?)
            """,
            (event_id, message_timestamp, now, now + self.retention),
        )
        is_new: bool = cursor.rowcount == 1
        if not is_new:
            logger.info("Duplicate message: %s", event_id)
        return ReplayCheck(is_new=is_new)

    async def purge_expired(self) -> int:
        """Delete records past their retention and return how many were removed."""
        cursor: sqlite3.Cursor = self.connection.execute(
            "DELETE FROM eventsub_messages WHERE expires_at < ?",
            (self._clock(),),
        )
        if cursor.rowcount:
            logger.debug("Purged %d expired replay record(s)", cursor.rowcount)
        return cursor.rowcount
