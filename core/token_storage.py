"""Credential storage implementation using SQLite3.

This module provides persistent storage for the OAuth credentials of every bot identity
and for the app access token. ``SQLiteStorage`` holds the connection handling shared by
the other SQLite-backed stores of the project.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Self

from models.credential_models import APP_TOKEN_IDENTITY, Credential
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging


__all__: list[str] = ["CredentialNotFoundError", "CredentialStore", "SQLiteStorage"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)


class CredentialNotFoundError(Exception):
    """No usable credential is stored for an identity."""


class SQLiteStorage:
    """Base class for small SQLite3-backed stores.

    Subclasses set ``SCHEMA`` to the statements that create their tables. The connection
    runs in autocommit mode and is opened lazily on first use, or explicitly through the
    context manager.

    Attributes:
        db_path (Path): Path to the SQLite database file.
        _connection (sqlite3.Connection | None): Active database connection.
    """

    SCHEMA: ClassVar[tuple[str, ...]] = ()

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store with the path to the database file.

        Args:
            db_path (str | Path): Path to the SQLite database file. ``:memory:`` is accepted.

        Raises:
            RuntimeError: If the database path is empty.
        """
        logger.debug("Initializing %s", self.__class__.__name__)

        if str(db_path).strip() == "":
            msg: str = "The database path is empty."
            raise RuntimeError(msg)

        self.db_path: Path = Path(db_path)
        self._connection: sqlite3.Connection | None = None
        logger.debug("Database path set to: %s", self.db_path)

    def __enter__(self) -> Self:
        """Enter context manager; initialize database connection."""
        self._initialize_database()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager; close database connection."""
        _ = exc_type, exc_val, exc_tb
        self.close()

    def _initialize_database(self) -> None:
        """Open the connection and create tables if they don't exist."""
        if self._connection is not None:
            return

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._connection.row_factory = sqlite3.Row

        for statement in self.SCHEMA:
            self._connection.execute(statement)
        logger.debug("%s database initialized", self.__class__.__name__)

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection, opening it on first use."""
        if self._connection is None:
            self._initialize_database()
        if self._connection is None:
            msg = "Database connection is not initialized."
            raise RuntimeError(msg)
        return self._connection

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            logger.debug("%s database connection closed", self.__class__.__name__)


class CredentialStore(SQLiteStorage):
    """Durable map from identity to its OAuth credential.

    A row whose access or refresh token is empty is treated as absent. The app access
    token is kept under ``APP_TOKEN_IDENTITY`` and has no refresh token.
    """

    SCHEMA: ClassVar[tuple[str, ...]] = (
        """
        CREATE TABLE IF NOT EXISTS credentials (
            identity TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            updated_at REAL NOT NULL
        )
        """,
    )

    async def get(self, identity: str) -> Credential | None:
        """Load the credential of ``identity``.

        Args:
            identity (str): Twitch user id, or ``APP_TOKEN_IDENTITY``.

        Returns:
            Credential | None: The stored credential, or None if absent or incomplete.
        """
        cursor: sqlite3.Cursor = self.connection.execute(
            "SELECT identity, access_token, refresh_token FROM credentials WHERE identity = ?",
            (identity,),
        )
        row: sqlite3.Row | None = cursor.fetchone()
        if row is None:
            logger.debug("No credential found for identity: %s", identity)
            return None

        credential = Credential(
            identity=row["identity"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
        )
        if not credential.access_token:
            logger.debug("Stored credential of %s has no access token", identity)
            return None
        if identity != APP_TOKEN_IDENTITY and not credential.refresh_token:
            logger.debug("Stored credential of %s has no refresh token", identity)
            return None
        return credential

    async def set(self, identity: str, credential: Credential) -> None:
        """Insert or replace the credential of ``identity``.

        Args:
            identity (str): Key to store the credential under.
            credential (Credential): The token pair.
        """
        self.connection.execute(
            """
            INSERT OR REPLACE INTO credentials (identity, access_token, refresh_token, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (identity, credential.access_token, credential.refresh_token, time.time()),
        )
        logger.debug("Saved credential for identity: %s", identity)

    async def require(self, identity: str) -> Credential:
        """Load the credential of ``identity`` or fail.

        Raises:
            CredentialNotFoundError: If no usable credential is stored.
        """
        credential: Credential | None = await self.get(identity)
        if credential is None:
            msg: str = f"No credential stored for identity '{identity}'. Authorize it via /auth first."
            raise CredentialNotFoundError(msg)
        return credential

    async def delete(self, identity: str) -> None:
        self.connection.execute("DELETE FROM credentials WHERE identity = ?", (identity,))
        logger.debug("Deleted credential for identity: %s", identity)

    async def identities(self) -> list[str]:
        """List every identity with a stored row, app token excluded."""
        cursor: sqlite3.Cursor = self.connection.execute(
            "SELECT identity FROM credentials WHERE identity != ? ORDER BY identity",
            (APP_TOKEN_IDENTITY,),
        )
        return [row["identity"] for row in cursor.fetchall()]
