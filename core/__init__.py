"""Core of the Twitch EventSub chat bots.

This package contains the bot engine, the multi-identity host, OAuth token management
and the credential stores. Transport handling lives in ``core.eventsub`` and chat
commands in ``core.commands``.
"""

from core.bot import TwitchBot
from core.host import BotHooks, IdentityHost
from core.token_manager import AppCredentials, AuthorizationFlow, OAuthClient, OAuthError
from core.token_refresher import CredentialCache, TokenRefresher
from core.token_storage import CredentialNotFoundError, CredentialStore
from core.version import VERSION

__all__: list[str] = [
    "VERSION",
    "AppCredentials",
    "AuthorizationFlow",
    "BotHooks",
    "CredentialCache",
    "CredentialNotFoundError",
    "CredentialStore",
    "IdentityHost",
    "OAuthClient",
    "OAuthError",
    "TokenRefresher",
    "TwitchBot",
]
