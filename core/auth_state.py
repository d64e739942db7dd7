"""One-time OAuth ``state`` values.

A state is generated when the authorize URL is built and consumed by the callback. It is
valid for ``STATE_TTL_SEC`` seconds and can be verified only once.
"""

from __future__ import annotations

import secrets
import time
from typing import TYPE_CHECKING, ClassVar, Final

from core.token_storage import SQLiteStorage
from models.credential_models import PendingAuthState
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    import sqlite3
    from collections.abc import Callable
    from pathlib import Path


__all__: list[str] = ["STATE_TTL_SEC", "AuthStateStore"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

STATE_TTL_SEC: Final[float] = 60.0
STATE_BYTES: Final[int] = 16


class AuthStateStore(SQLiteStorage):
    """SQLite store of pending OAuth states."""

    SCHEMA: ClassVar[tuple[str, ...]] = (
        """
        CREATE TABLE IF NOT EXISTS auth_states (
            state TEXT PRIMARY KEY,
            expiration REAL NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_auth_states_expiration ON auth_states(expiration)",
    )

    def __init__(
        self,
        db_path: str | Path,
        *,
        ttl: float = STATE_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(db_path)
        self.ttl: float = ttl
        self._clock: Callable[[], float] = clock

    async def generate(self) -> PendingAuthState:
        """Create and persist a new random state."""
        pending = PendingAuthState(state=secrets.token_hex(STATE_BYTES), expiration=self._clock() + self.ttl)
        self.connection.execute(
            "INSERT INTO auth_states (state, expiration) VALUES (?, ?)",
            (pending.state, pending.expiration),
        )
        logger.debug("Generated OAuth state (expires at %.0f)", pending.expiration)
        return pending

    async def verify(self, state: str) -> bool:
        """Consume ``state``.

        Returns True only for a known, unexpired state that has not been verified before.
        Expired states are swept afterwards either way.
        """
        if not state:
            return False

        cursor: sqlite3.Cursor = self.connection.execute(
            "DELETE FROM auth_states WHERE state = ? AND expiration >= ?",
            (state, self._clock()),
        )
        valid: bool = cursor.rowcount == 1
        await self.sweep()
        if not valid:
            logger.warning("Rejected unknown or expired OAuth state")
        return valid

    async def sweep(self) -> int:
        """Delete expired states and return how many were removed."""
        cursor: sqlite3.Cursor = self.connection.execute(
            "DELETE FROM auth_states WHERE expiration < ?",
            (self._clock(),),
        )
        if cursor.rowcount:
            logger.debug("Swept %d expired OAuth state(s)", cursor.rowcount)
        return cursor.rowcount
