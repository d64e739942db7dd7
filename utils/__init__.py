"""Utility modules for the Twitch bots.

This package provides logging setup and chat text helpers.
"""

from utils.chat_utils import ChatUtils
from utils.logger_utils import IdentityLogAdapter, LoggerUtils

__all__: list[str] = ["ChatUtils", "IdentityLogAdapter", "LoggerUtils"]
