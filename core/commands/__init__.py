"""Chat command parsing, routing and the moderator-managed command table."""

from core.commands.custom import CommandTextStore, CustomCommands
from core.commands.router import CommandRouter, is_privileged, parse_command

__all__: list[str] = ["CommandRouter", "CommandTextStore", "CustomCommands", "is_privileged", "parse_command"]
