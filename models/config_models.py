"""Configuration data models.

Each dataclass mirrors one section of ``twitchbots.ini``. Bot identities are not fixed
sections: every ``[BOT.<name>]`` section produces one ``IdentityConfig`` in
``Config.BOTS``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

__all__: list[str] = [
    "Config",
    "EventSub",
    "General",
    "IdentityConfig",
    "Server",
    "Storage",
    "TransportMethod",
]

type TransportMethod = Literal["webhook", "websocket"]


@dataclass
class General:
    DEBUG: bool = False
    VERSION: str = ""
    SCRIPT_NAME: str = ""
    LOG_FILE: str = "twitchbots.log"


@dataclass
class Server:
    HOST: str = "0.0.0.0"  # noqa: S104
    PORT: int = 3000
    PUBLIC_URL: str = ""


@dataclass
class Storage:
    DB_PATH: str = "twitchbots.db"


@dataclass
class EventSub:
    REPLAY_RETENTION_SEC: float = 600.0
    REPLAY_PURGE_INTERVAL_SEC: float = 300.0
    WELCOME_TIMEOUT_SEC: float = 10.0
    KEEPALIVE_GRACE_SEC: float = 5.0
    REQUEST_TIMEOUT_SEC: float = 10.0
    WEBSOCKET_URL: str = "wss://eventsub.wss.twitch.tv/ws"


@dataclass
class IdentityConfig:
    """Settings of one bot identity.

    Attributes:
        NAME (str): Display name used in logs and as the webhook route, e.g. ``SnaleBot``.
        BOT_USER_ID (str): Twitch user id of the bot account; credentials are stored under it.
        BOT_USERNAME (str): Login name of the bot account.
        CHANNEL_USER_ID (str): Twitch user id of the broadcaster whose chat the bot serves.
        TRANSPORT (TransportMethod): ``webhook`` or ``websocket``.
        COMMAND_PREFIX (str): Prefix that marks a chat message as a command.
        COMMANDS (dict[str, str]): Static command table, name to reply text.
        CUSTOM_COMMANDS (bool): Enable the moderator-managed command table.
    """

    NAME: str = ""
    BOT_USER_ID: str = ""
    BOT_USERNAME: str = ""
    CHANNEL_USER_ID: str = ""
    TRANSPORT: TransportMethod = "webhook"
    COMMAND_PREFIX: str = "!"
    COMMANDS: dict[str, str] = field(default_factory=dict)
    CUSTOM_COMMANDS: bool = False

    @property
    def route_name(self) -> str:
        """Path segment of the webhook route, ``/bots/<route_name>``."""
        return self.NAME.lower()


@dataclass
class Config:
    GENERAL: General = field(default_factory=General)
    SERVER: Server = field(default_factory=Server)
    STORAGE: Storage = field(default_factory=Storage)
    EVENTSUB: EventSub = field(default_factory=EventSub)
    BOTS: list[IdentityConfig] = field(default_factory=list)
