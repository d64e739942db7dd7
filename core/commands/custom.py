"""Moderator-managed command table.

Moderators add, edit and remove text commands from chat::

    !addcommand !hi hello there
    !editcommand !hi hello again
    !removecommand !hi

The texts are kept in SQLite per bot identity and answer any command that is not in the
bot's own table.
"""

from __future__ import annotations

import sqlite3
import time
from typing import TYPE_CHECKING, ClassVar

from core.commands.router import is_privileged, parse_command
from core.token_storage import SQLiteStorage
from models.command_models import DynamicCommand, NoReply, Reply
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from pathlib import Path

    from core.commands.router import CommandRouter
    from models.command_models import CommandContext, CommandResult, ParsedCommand


__all__: list[str] = ["CommandTextStore", "CustomCommands"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)


class CommandTextStore(SQLiteStorage):
    """Command texts of one bot identity, keyed by command name."""

    SCHEMA: ClassVar[tuple[str, ...]] = (
        """
        CREATE TABLE IF NOT EXISTS custom_commands (
            identity TEXT NOT NULL,
            name TEXT NOT NULL,
            text TEXT NOT NULL,
            updated_at REAL NOT NULL,
            PRIMARY KEY (identity, name)
        )
        """,
    )

    def __init__(self, db_path: str | Path, identity: str) -> None:
        super().__init__(db_path)
        self.identity: str = identity

    async def create(self, name: str, text: str) -> bool:
        """Insert a command. Returns False if the name is taken."""
        cursor: sqlite3.Cursor = self.connection.execute(
            "INSERT OR IGNORE INTO custom_commands (identity, name, text, updated_at) VALUES (?, ?, ?, ?)",
            (self.identity, name, text, time.time()),
        )
        return cursor.rowcount == 1

    async def get(self, name: str) -> str | None:
        cursor: sqlite3.Cursor = self.connection.execute(
            "SELECT text FROM custom_commands WHERE identity = ? AND name = ?",
            (self.identity, name),
        )
        row: sqlite3.Row | None = cursor.fetchone()
        return None if row is None else row["text"]

    async def update(self, name: str, text: str) -> bool:
        """Replace the text of an existing command. Returns False if it does not exist."""
        cursor: sqlite3.Cursor = self.connection.execute(
            "UPDATE custom_commands SET text = ?, updated_at = ? WHERE identity = ? AND name = ?",
            (text, time.time(), self.identity, name),
        )
        return cursor.rowcount == 1

    async def delete(self, name: str) -> bool:
        cursor: sqlite3.Cursor = self.connection.execute(
            "DELETE FROM custom_commands WHERE identity = ? AND name = ?",
            (self.identity, name),
        )
        return cursor.rowcount == 1

    async def list_commands(self) -> list[tuple[str, str]]:
        cursor: sqlite3.Cursor = self.connection.execute(
            "SELECT name, text FROM custom_commands WHERE identity = ? ORDER BY name",
            (self.identity,),
        )
        return [(row["name"], row["text"]) for row in cursor.fetchall()]


class CustomCommands:
    """Chat commands that edit a ``CommandTextStore``.

    ``install`` adds ``addcommand``, ``editcommand``, ``removecommand`` and ``modstatus``
    to a router and makes the store the router's fallback for unknown names. The mutating
    commands do nothing for chatters who are not privileged.
    """

    def __init__(self, store: CommandTextStore, *, prefix: str = "!") -> None:
        self.store: CommandTextStore = store
        self.prefix: str = prefix

    def install(self, router: CommandRouter) -> None:
        router.add("addcommand", DynamicCommand(self.add_command, "Add a text command (moderators)"))
        router.add("editcommand", DynamicCommand(self.edit_command, "Change a text command (moderators)"))
        router.add("removecommand", DynamicCommand(self.remove_command, "Delete a text command (moderators)"))
        router.add("modstatus", DynamicCommand(self.mod_status, "Tell whether the chatter is a moderator"))
        router.on_command_missing = self.resolve_missing

    async def add_command(self, context: CommandContext) -> CommandResult:
        if not is_privileged(context):
            return NoReply()

        cmd: ParsedCommand | None = parse_command(context.argument, self.prefix)
        if cmd is None or not cmd.argument:
            return Reply(f"Usage: `{self.prefix}addcommand {self.prefix}commandname output`")

        logger.info("[%s] Adding command: %s%s %s", context.chatter.login, self.prefix, cmd.name, cmd.argument)
        try:
            created: bool = await self.store.create(cmd.name, cmd.argument)
        except sqlite3.Error as err:
            logger.error("Failed to add command %s: %s", cmd.name, err)
            return Reply("An error occurred while adding the command")

        if not created:
            return Reply(f"Command already exists: {self.prefix}{cmd.name}")
        return Reply(f"Added command {self.prefix}{cmd.name}: {cmd.argument}")

    async def edit_command(self, context: CommandContext) -> CommandResult:
        if not is_privileged(context):
            return NoReply()

        cmd: ParsedCommand | None = parse_command(context.argument, self.prefix)
        if cmd is None or not cmd.argument:
            return Reply(f"Usage: `{self.prefix}editcommand {self.prefix}commandname output`")

        logger.info("[%s] Editing command: %s%s %s", context.chatter.login, self.prefix, cmd.name, cmd.argument)
        try:
            updated: bool = await self.store.update(cmd.name, cmd.argument)
        except sqlite3.Error as err:
            logger.error("Failed to edit command %s: %s", cmd.name, err)
            return Reply("An error occurred while updating the command.")

        if not updated:
            return Reply(
                f"Command {self.prefix}{cmd.name} does not exist. Use {self.prefix}addcommand or fix your spelling."
            )
        return Reply(f"Command updated {self.prefix}{cmd.name}: {cmd.argument}")

    async def remove_command(self, context: CommandContext) -> CommandResult:
        if not is_privileged(context):
            return NoReply()

        cmd: ParsedCommand | None = parse_command(context.argument, self.prefix)
        if cmd is None:
            return Reply(f"Usage: `{self.prefix}removecommand {self.prefix}commandname`")

        logger.info("[%s] Removing command: %s%s", context.chatter.login, self.prefix, cmd.name)
        try:
            deleted: bool = await self.store.delete(cmd.name)
        except sqlite3.Error as err:
            logger.error("Failed to remove command %s: %s", cmd.name, err)
            return Reply("An error occurred while deleting the command.")

        if not deleted:
            return Reply(f"Command {self.prefix}{cmd.name} does not exist, cannot delete it.")
        return Reply(f"Deleted {self.prefix}{cmd.name}")

    def mod_status(self, context: CommandContext) -> CommandResult:
        if is_privileged(context):
            return Reply(f"@{context.chatter.login} is a moderator")
        return Reply(f"@{context.chatter.login} is NOT a moderator")

    async def resolve_missing(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        """Answer an unknown command from the store."""
        _ = context
        text: str | None = await self.store.get(parsed.name)
        return NoReply() if text is None else Reply(text)
