"""Process-wide host of all bot identities.

``IdentityHost`` owns the shared resources (HTTP session, SQLite stores, OAuth client)
and builds one ``TwitchBot`` per configured identity, each with its own credential
cache, token refresher, command router and ingress. An identity without a stored
credential is logged and skipped; the other identities still start.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from core.auth_state import AuthStateStore
from core.bot import TwitchBot
from core.commands.custom import CommandTextStore, CustomCommands
from core.commands.router import CommandRouter
from core.eventsub.replay_guard import ReplayGuard
from core.eventsub.subscriptions import SubscriptionError, SubscriptionManager
from core.eventsub.webhook import WebhookIngress
from core.token_manager import AuthorizationFlow, OAuthClient
from core.token_refresher import CredentialCache, TokenRefresher
from core.token_storage import CredentialNotFoundError, CredentialStore
from handlers.async_comm import AsyncCommError, AsyncHttp
from models.command_models import StaticCommand
from models.credential_models import APP_TOKEN_IDENTITY
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Mapping

    from core.bot import MessageHook
    from core.commands.router import MissingCommandResolver
    from core.token_manager import AppCredentials
    from core.token_refresher import TokenRefreshHook
    from models.command_models import CommandEntry
    from models.config_models import Config, IdentityConfig
    from models.credential_models import Credential
    from models.eventsub_models import Subscription


__all__: list[str] = ["BotHooks", "IdentityHost"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)


@dataclass
class BotHooks:
    """Code-level additions to a bot identity that the INI file cannot express.

    Attributes:
        commands (dict[str, CommandEntry]): Extra commands, usually dynamic ones.
        on_message (MessageHook | None): Sees every chat message before routing.
        on_command_missing (MissingCommandResolver | None): Resolves unknown commands.
            Takes precedence over the moderator-managed command table.
        on_token_refresh (TokenRefreshHook | None): Called after each token renewal.
    """

    commands: dict[str, CommandEntry] = field(default_factory=dict)
    on_message: MessageHook | None = None
    on_command_missing: MissingCommandResolver | None = None
    on_token_refresh: TokenRefreshHook | None = None


class IdentityHost:
    """Build, run and stop every configured bot identity.

    Attributes:
        config (Config): Loaded configuration.
        app (AppCredentials): Twitch application credentials.
        http (AsyncHttp): HTTP client shared by all identities.
        credentials (CredentialStore): Stored OAuth credentials.
        auth_states (AuthStateStore): Pending OAuth states.
        replay_guard (ReplayGuard): Seen webhook message ids.
        oauth (OAuthClient): Client for the Twitch OAuth endpoints.
        flow (AuthorizationFlow): Authorization code flow used by the HTTP routes.
        bots (dict[str, TwitchBot]): Running bots keyed by route name.
        ingresses (dict[str, WebhookIngress]): Webhook ingress of each webhook bot.
    """

    def __init__(
        self,
        config: Config,
        app: AppCredentials,
        *,
        hooks: Mapping[str, BotHooks] | None = None,
        http: AsyncHttp | None = None,
    ) -> None:
        logger.debug("Initializing %s", self.__class__.__name__)
        self.config: Config = config
        self.app: AppCredentials = app
        self.hooks: dict[str, BotHooks] = dict(hooks or {})

        db_path: str = config.STORAGE.DB_PATH
        self.http: AsyncHttp = http or AsyncHttp(total_timeout=config.EVENTSUB.REQUEST_TIMEOUT_SEC)
        self.credentials: CredentialStore = CredentialStore(db_path)
        self.auth_states: AuthStateStore = AuthStateStore(db_path)
        self.replay_guard: ReplayGuard = ReplayGuard(db_path, retention=config.EVENTSUB.REPLAY_RETENTION_SEC)
        self.oauth: OAuthClient = OAuthClient(app, self.http)
        self.flow: AuthorizationFlow = AuthorizationFlow(self.oauth, self.auth_states, self.credentials)

        self.bots: dict[str, TwitchBot] = {}
        self.ingresses: dict[str, WebhookIngress] = {}
        self.app_refresher: TokenRefresher | None = None
        self._command_stores: list[CommandTextStore] = []
        self._session_tasks: dict[str, asyncio.Task[None]] = {}
        self._maintenance_task: asyncio.Task[None] | None = None
        self._stopped: bool = False

    def get_bot(self, route_name: str) -> TwitchBot | None:
        return self.bots.get(route_name.lower())

    def get_ingress(self, route_name: str) -> WebhookIngress | None:
        return self.ingresses.get(route_name.lower())

    # --------------------------------------------------
    # Setup
    # --------------------------------------------------
    async def setup(self) -> list[TwitchBot]:
        """Build a bot for every identity that has a stored credential.

        Returns:
            list[TwitchBot]: The bots that were built.
        """
        await self._load_app_refresher()
        for identity in self.config.BOTS:
            if identity.route_name in self.bots:
                continue
            try:
                bot: TwitchBot = await self.build_bot(identity)
            except CredentialNotFoundError as err:
                logger.error("Skipping bot '%s': %s", identity.NAME, err)
                continue
            self.bots[identity.route_name] = bot
            logger.info("Bot '%s' ready (%s)", identity.NAME, identity.TRANSPORT)
        return list(self.bots.values())

    async def _load_app_refresher(self) -> None:
        credential: Credential | None = await self.credentials.get(APP_TOKEN_IDENTITY)
        if credential is None:
            self.app_refresher = None
            if any(identity.TRANSPORT == "webhook" for identity in self.config.BOTS):
                logger.warning("No app access token stored; webhook subscriptions need POST /setup-app-token")
            return

        self.app_refresher = TokenRefresher.for_app(
            cache=CredentialCache(credential),
            store=self.credentials,
            http=self.http,
            oauth=self.oauth,
            request_timeout=self.config.EVENTSUB.REQUEST_TIMEOUT_SEC,
        )

    def _subscription_manager(
        self, identity: IdentityConfig, refresher: TokenRefresher | None, log: logging.LoggerAdapter
    ) -> SubscriptionManager | None:
        if refresher is None:
            return None
        return SubscriptionManager(
            refresher=refresher,
            client_id=self.app.client_id,
            bot_user_id=identity.BOT_USER_ID,
            channel_user_id=identity.CHANNEL_USER_ID,
            log=log,
        )

    def _build_router(self, identity: IdentityConfig, hooks: BotHooks, log: logging.LoggerAdapter) -> CommandRouter:
        commands: dict[str, CommandEntry] = {name: StaticCommand(text) for name, text in identity.COMMANDS.items()}
        commands.update(hooks.commands)
        router = CommandRouter(commands, prefix=identity.COMMAND_PREFIX, log=log)

        if identity.CUSTOM_COMMANDS:
            store = CommandTextStore(self.config.STORAGE.DB_PATH, identity.BOT_USER_ID)
            self._command_stores.append(store)
            CustomCommands(store, prefix=identity.COMMAND_PREFIX).install(router)
        if hooks.on_command_missing is not None:
            router.on_command_missing = hooks.on_command_missing
        return router

    async def build_bot(self, identity: IdentityConfig) -> TwitchBot:
        """Build the bot of one identity from its stored credential.

        Raises:
            CredentialNotFoundError: If no usable credential is stored for the bot account.
        """
        log: logging.LoggerAdapter = LoggerUtils.get_identity_logger("core.bot", identity.NAME)
        hooks: BotHooks = self.hooks.get(identity.NAME) or BotHooks()

        credential: Credential = await self.credentials.require(identity.BOT_USER_ID)
        refresher: TokenRefresher = TokenRefresher.for_user(
            cache=CredentialCache(credential),
            store=self.credentials,
            http=self.http,
            oauth=self.oauth,
            on_token_refresh=hooks.on_token_refresh,
            request_timeout=self.config.EVENTSUB.REQUEST_TIMEOUT_SEC,
            log=log,
        )

        # webhook subscriptions are created with the app token, WebSocket ones with the user token
        subscription_refresher: TokenRefresher | None = (
            refresher if identity.TRANSPORT == "websocket" else self.app_refresher
        )
        bot = TwitchBot(
            identity,
            client_id=self.app.client_id,
            refresher=refresher,
            router=self._build_router(identity, hooks, log),
            subscriptions=self._subscription_manager(identity, subscription_refresher, log),
            on_message=hooks.on_message,
            log=log,
        )

        if identity.TRANSPORT == "webhook":
            self.ingresses[identity.route_name] = WebhookIngress(
                secret=self.app.webhook_secret,
                replay_guard=self.replay_guard,
                on_chat_event=bot.handle_chat_event,
                log=log,
            )
        return bot

    async def setup_app_token(self) -> None:
        """Fetch and store a new app access token and hand it to the webhook bots.

        Raises:
            OAuthError: If the token endpoint refuses the request.
        """
        await self.flow.setup_app_token()
        await self._load_app_refresher()
        for bot in self.bots.values():
            if bot.identity.TRANSPORT == "webhook":
                log: logging.LoggerAdapter = LoggerUtils.get_identity_logger("core.bot", bot.name)
                bot.subscriptions = self._subscription_manager(bot.identity, self.app_refresher, log)

    def webhook_callback(self, identity: IdentityConfig) -> str:
        return f"{self.config.SERVER.PUBLIC_URL.rstrip('/')}/bots/{identity.route_name}"

    async def setup_webhooks(self) -> dict[str, str]:
        """Make the chat subscription of every webhook bot target its callback route.

        Returns:
            dict[str, str]: Outcome per bot name: ``created``, ``exists`` or an error text.
        """
        results: dict[str, str] = {}
        for bot in self.bots.values():
            if bot.identity.TRANSPORT != "webhook":
                continue
            if not self.config.SERVER.PUBLIC_URL:
                results[bot.name] = "error: SERVER.PUBLIC_URL is not set"
                continue
            if bot.subscriptions is None:
                results[bot.name] = "error: no app access token"
                continue

            try:
                created: Subscription | None = await bot.register_webhook(
                    self.webhook_callback(bot.identity), self.app.webhook_secret
                )
            except (SubscriptionError, AsyncCommError) as err:
                logger.error("Webhook subscription for '%s' failed: %s", bot.name, err)
                results[bot.name] = f"error: {err}"
                continue
            results[bot.name] = "exists" if created is None else "created"
        return results

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------
    async def start(self) -> None:
        """Set up and authenticate the bots, then connect the WebSocket ones."""
        self.http.initialize_session()
        await self.setup()

        for route_name, bot in list(self.bots.items()):
            if not await bot.authenticate():
                logger.error("Bot '%s' could not authenticate and is not started", bot.name)
                await bot.stop()
                self.bots.pop(route_name, None)
                self.ingresses.pop(route_name, None)
                continue
            if bot.identity.TRANSPORT == "websocket":
                self._start_session(bot)

        self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name="eventsub-maintenance")
        logger.info("%d bot(s) running", len(self.bots))

    def _start_session(self, bot: TwitchBot) -> None:
        bot.create_session(
            url=self.config.EVENTSUB.WEBSOCKET_URL,
            welcome_timeout=self.config.EVENTSUB.WELCOME_TIMEOUT_SEC,
            keepalive_grace=self.config.EVENTSUB.KEEPALIVE_GRACE_SEC,
        )
        task: asyncio.Task[None] = asyncio.create_task(bot.start_websocket(), name=f"eventsub-ws-{bot.name}")
        task.add_done_callback(lambda _task, name=bot.name: self._on_session_done(name, _task))
        self._session_tasks[bot.name] = task

    def _on_session_done(self, name: str, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        err: BaseException | None = task.exception()
        if err is not None:
            logger.error("WebSocket session of '%s' ended with an error: %s", name, err)
        elif not self._stopped:
            logger.warning("WebSocket session of '%s' has ended", name)

    async def _maintenance_loop(self) -> None:
        interval: float = self.config.EVENTSUB.REPLAY_PURGE_INTERVAL_SEC
        while True:
            await asyncio.sleep(interval)
            await self.run_maintenance()

    async def run_maintenance(self) -> dict[str, int]:
        """Purge expired replay records and pending OAuth states."""
        purged: dict[str, int] = {}
        try:
            purged["replay"] = await self.replay_guard.purge_expired()
            purged["auth_states"] = await self.auth_states.sweep()
        except sqlite3.Error as err:
            logger.error("Storage maintenance failed: %s", err)
        if any(purged.values()):
            logger.debug("Purged expired records: %s", purged)
        return purged

    async def stop(self) -> None:
        """Stop dispatching, close the sockets and release shared resources."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Start shutdown sequence")

        for bot in self.bots.values():
            await bot.stop()

        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None

        if self._session_tasks:
            await asyncio.gather(*self._session_tasks.values(), return_exceptions=True)
            self._session_tasks.clear()

        await self.http.close()
        for store in (*self._command_stores, self.replay_guard, self.auth_states, self.credentials):
            store.close()
        logger.info("Shutdown sequence complete")

