"""Per-identity bot engine.

A ``TwitchBot`` ties one bot identity together: its configuration, the token refresher
holding its credential, its command router and the optional hooks. Chat events arrive
from either transport through ``handle_chat_event``; replies leave through
``send_message``.
"""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, Final

from core.eventsub.realtime import EVENTSUB_WEBSOCKET_URL, RealtimeSession
from core.token_manager import OAuthClient
from handlers.async_comm import ApiRequest, AsyncCommError
from models.command_models import NoReply, Reply, ThreadedReply
from utils.chat_utils import MAX_CHAT_MESSAGE_LENGTH, ChatUtils
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Awaitable, Callable

    from core.commands.router import CommandRouter
    from core.eventsub.subscriptions import SubscriptionManager
    from core.token_refresher import CredentialCache, TokenRefresher
    from handlers.async_comm import ApiResponse
    from models.command_models import ChatEvent, CommandResult
    from models.config_models import IdentityConfig
    from models.eventsub_models import Subscription

    type MessageHook = Callable[[ChatEvent], Awaitable[Any] | Any]


__all__: list[str] = ["CHAT_MESSAGES_URL", "TwitchBot"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

CHAT_MESSAGES_URL: Final[str] = "https://api.twitch.tv/helix/chat/messages"


class TwitchBot:
    """Chat bot of one Twitch account serving one channel.

    Attributes:
        identity (IdentityConfig): Settings of the bot identity.
        client_id (str): Twitch application client id.
        refresher (TokenRefresher): Sends requests with the bot's user access token.
        router (CommandRouter): Command table of the bot.
        subscriptions (SubscriptionManager | None): Manages the chat subscription.
        on_message (MessageHook | None): Called with every chat event before routing.
        session (RealtimeSession | None): WebSocket session, once started.
    """

    def __init__(
        self,
        identity: IdentityConfig,
        *,
        client_id: str,
        refresher: TokenRefresher,
        router: CommandRouter,
        subscriptions: SubscriptionManager | None = None,
        on_message: MessageHook | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.identity: IdentityConfig = identity
        self.client_id: str = client_id
        self.refresher: TokenRefresher = refresher
        self.router: CommandRouter = router
        self.subscriptions: SubscriptionManager | None = subscriptions
        self.on_message: MessageHook | None = on_message
        self.session: RealtimeSession | None = None
        self._log: logging.Logger | logging.LoggerAdapter = log or logger
        self._stopped: bool = False

    def __repr__(self) -> str:
        return f"TwitchBot(name={self.name!r}, user_id={self.bot_user_id!r})"

    @property
    def name(self) -> str:
        return self.identity.NAME

    @property
    def bot_user_id(self) -> str:
        return self.identity.BOT_USER_ID

    @property
    def channel_user_id(self) -> str:
        return self.identity.CHANNEL_USER_ID

    @property
    def credential_cache(self) -> CredentialCache:
        return self.refresher.cache

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def handle_chat_event(self, event: ChatEvent) -> CommandResult:
        """Run one chat event through the hook, the router and the send call.

        Args:
            event (ChatEvent): The chat message.

        Returns:
            CommandResult: What the router produced; NoReply once the bot is stopped or
            for the bot's own messages.
        """
        if self._stopped:
            self._log.debug("Bot stopped; dropping message %s", event.message_id)
            return NoReply()
        if event.chatter.id == self.bot_user_id:
            # a reply that is itself a command would otherwise trigger the bot again
            self._log.debug("Ignoring own message %s", event.message_id)
            return NoReply()

        if self.on_message is not None:
            try:
                hook_result: Any = self.on_message(event)
                if inspect.isawaitable(hook_result):
                    await hook_result
            except Exception:  # noqa: BLE001
                self._log.exception("on_message hook failed for %s", event.message_id)

        result: CommandResult = await self.router.dispatch(event)
        if isinstance(result, ThreadedReply):
            await self.send_message(result.text, reply_to=result.parent_id)
        elif isinstance(result, Reply):
            await self.send_message(result.text)
        return result

    def _chat_request(self, token: str, body: dict[str, str]) -> ApiRequest:
        return ApiRequest(
            method="POST",
            url=CHAT_MESSAGES_URL,
            headers={
                "Authorization": f"Bearer {token}",
                "Client-Id": self.client_id,
                "Content-Type": "application/json",
            },
            json=body,
        )

    async def send_message(self, text: str, reply_to: str | None = None) -> bool:
        """Send a chat message to the bot's channel.

        Text longer than Twitch accepts is truncated. Failures are logged and not raised.

        Args:
            text (str): Message text.
            reply_to (str | None): Message id to thread the reply under.

        Returns:
            bool: True if Twitch accepted the message.
        """
        if not text:
            return False

        message: str = ChatUtils.truncate_message(text, MAX_CHAT_MESSAGE_LENGTH)
        body: dict[str, str] = {
            "message": message,
            "sender_id": self.bot_user_id,
            "broadcaster_id": self.channel_user_id,
        }
        if reply_to:
            body["reply_parent_message_id"] = reply_to

        try:
            response: ApiResponse = await self.refresher.execute(lambda token: self._chat_request(token, body))
        except AsyncCommError as err:
            self._log.error("Failed to send chat message: %s", err)
            return False

        if response.status != 200:
            self._log.error("Failed to send chat message (%d): %s", response.status, response.text)
            return False

        self._log.info("Sent chat message: %s", message)
        return True

    async def authenticate(self) -> bool:
        """Validate the bot's access token, renewing it if it has expired.

        Returns:
            bool: True if the token is valid for the configured bot account.
        """
        try:
            response: ApiResponse = await self.refresher.execute(OAuthClient.validate_request)
        except AsyncCommError as err:
            self._log.error("Token validation failed: %s", err)
            return False

        if response.status != 200:
            self._log.error("Token validation failed with status %d", response.status)
            return False

        try:
            data: Any = response.json() or {}
        except ValueError as err:
            self._log.error("Token validation returned a body that is not JSON: %s", err)
            return False
        if not isinstance(data, dict):
            self._log.error("Token validation returned an unexpected body: %s", response.text[:200])
            return False

        user_id: Any = data.get("user_id")
        if user_id and user_id != self.bot_user_id:
            self._log.error("Token belongs to user %s, not to the bot account %s", user_id, self.bot_user_id)
            return False

        self._log.info("Authenticated as %s", data.get("login") or self.identity.BOT_USERNAME)
        return True

    async def register_webhook(self, callback: str, secret: str) -> Subscription | None:
        """Point the chat subscription at the webhook ``callback``.

        Raises:
            SubscriptionError: If listing or creating the subscription fails.
            RuntimeError: If the bot has no subscription manager.
        """
        if self.subscriptions is None:
            msg: str = f"Bot '{self.name}' has no subscription manager."
            raise RuntimeError(msg)
        return await self.subscriptions.ensure_webhook(callback, secret)

    async def _register_websocket(self, session_id: str) -> Subscription | None:
        if self.subscriptions is None:
            msg: str = f"Bot '{self.name}' has no subscription manager."
            raise RuntimeError(msg)
        return await self.subscriptions.ensure_websocket(session_id)

    def create_session(
        self,
        *,
        url: str = EVENTSUB_WEBSOCKET_URL,
        welcome_timeout: float | None = None,
        keepalive_grace: float | None = None,
    ) -> RealtimeSession:
        """Create the WebSocket session of this bot without connecting it."""
        kwargs: dict[str, float] = {}
        if welcome_timeout is not None:
            kwargs["welcome_timeout"] = welcome_timeout
        if keepalive_grace is not None:
            kwargs["keepalive_grace"] = keepalive_grace

        self.session = RealtimeSession(
            http=self.refresher.http,
            register=self._register_websocket,
            on_chat_event=self.handle_chat_event,
            url=url,
            log=self._log,
            **kwargs,
        )
        return self.session

    async def start_websocket(self, **kwargs) -> None:
        """Connect the WebSocket session and process events until it closes."""
        session: RealtimeSession = self.session or self.create_session(**kwargs)
        await session.run()

    async def stop(self) -> None:
        """Stop dispatching and close the WebSocket session.

        Sends already in progress run to completion.
        """
        if self._stopped:
            return
        self._stopped = True
        if self.session is not None:
            await self.session.stop()
        self._log.info("Bot stopped")
