"""Data models for the Twitch bots.

This package contains dataclass definitions for configuration, credentials, chat
commands and the EventSub wire format.
"""

from __future__ import annotations

from models.command_models import (
    Badge,
    ChatEvent,
    ChatUser,
    CommandContext,
    DynamicCommand,
    NoReply,
    ParsedCommand,
    Reply,
    StaticCommand,
    ThreadedReply,
)
from models.config_models import Config, IdentityConfig
from models.credential_models import APP_TOKEN_IDENTITY, Credential, PendingAuthState, TokenGrant
from models.eventsub_models import (
    CHAT_MESSAGE_SUBSCRIPTION,
    ChatMessageEvent,
    EventSubNotification,
    NotificationDecodeError,
    Subscription,
    VerificationChallenge,
)

__all__: list[str] = [
    "APP_TOKEN_IDENTITY",
    "CHAT_MESSAGE_SUBSCRIPTION",
    "Badge",
    "ChatEvent",
    "ChatMessageEvent",
    "ChatUser",
    "CommandContext",
    "Config",
    "Credential",
    "DynamicCommand",
    "EventSubNotification",
    "IdentityConfig",
    "NoReply",
    "NotificationDecodeError",
    "ParsedCommand",
    "PendingAuthState",
    "Reply",
    "StaticCommand",
    "Subscription",
    "ThreadedReply",
    "TokenGrant",
    "VerificationChallenge",
]
