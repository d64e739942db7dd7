"""EventSub WebSocket session.

The session is a small state machine::

    CONNECTING -> AWAITING_WELCOME -> ACTIVE -> CLOSED

Twitch opens every connection with ``session_welcome`` carrying the session id. Only
then can the chat subscription be registered against that id; a registration attempt
before the welcome is refused. Once ACTIVE, notifications are decoded and handed to the
chat handler one at a time in arrival order.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Final

import aiohttp

from core.eventsub.subscriptions import SubscriptionError
from handlers.async_comm import AsyncCommError
from models.eventsub_models import (
    NotificationDecodeError,
    SessionInfo,
    WebSocketMetadata,
    decode_notification,
)
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Awaitable, Callable

    from handlers.async_comm import AsyncHttp
    from models.command_models import ChatEvent
    from models.eventsub_models import EventSubNotification

    type ChatEventHandler = Callable[[ChatEvent], Awaitable[Any]]
    type RegisterFunc = Callable[[str], Awaitable[Any]]


__all__: list[str] = ["EVENTSUB_WEBSOCKET_URL", "RealtimeSession", "SessionState"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

EVENTSUB_WEBSOCKET_URL: Final[str] = "wss://eventsub.wss.twitch.tv/ws"
DEFAULT_WELCOME_TIMEOUT_SEC: Final[float] = 10.0
DEFAULT_KEEPALIVE_GRACE_SEC: Final[float] = 5.0
# used until the welcome message tells the real value
DEFAULT_KEEPALIVE_SEC: Final[float] = 10.0


class SessionState(Enum):
    CONNECTING = auto()
    AWAITING_WELCOME = auto()
    ACTIVE = auto()
    CLOSED = auto()


class RealtimeSession:
    """One EventSub WebSocket connection of a bot identity.

    Args:
        http (AsyncHttp): Provides the aiohttp session the socket is opened with.
        register (RegisterFunc): Called once with the session id after the welcome; it
            creates the ``channel.chat.message`` subscription for this session.
        on_chat_event (ChatEventHandler | None): Receives each chat event.
        url (str): WebSocket endpoint.
        welcome_timeout (float): Seconds to wait for ``session_welcome`` after connecting.
        keepalive_grace (float): Extra seconds allowed on top of the keepalive interval
            before a silent connection is considered dead.
        log (logging.Logger | logging.LoggerAdapter | None): Logger, usually identity-prefixed.
    """

    def __init__(
        self,
        *,
        http: AsyncHttp,
        register: RegisterFunc,
        on_chat_event: ChatEventHandler | None = None,
        url: str = EVENTSUB_WEBSOCKET_URL,
        welcome_timeout: float = DEFAULT_WELCOME_TIMEOUT_SEC,
        keepalive_grace: float = DEFAULT_KEEPALIVE_GRACE_SEC,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.http: AsyncHttp = http
        self.url: str = url
        self.welcome_timeout: float = welcome_timeout
        self.keepalive_grace: float = keepalive_grace
        self.on_chat_event: ChatEventHandler | None = on_chat_event
        self._register: RegisterFunc = register
        self._log: logging.Logger | logging.LoggerAdapter = log or logger

        self.state: SessionState = SessionState.CONNECTING
        self.session_id: str | None = None
        self.keepalive_timeout: float = DEFAULT_KEEPALIVE_SEC
        self._registered: bool = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        # loop time by which session_welcome must have arrived
        self._welcome_deadline: float | None = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def _receive_timeout(self) -> float:
        if self.state is SessionState.AWAITING_WELCOME:
            if self._welcome_deadline is None:
                return self.welcome_timeout
            return max(0.0, self._welcome_deadline - asyncio.get_running_loop().time())
        return self.keepalive_timeout + self.keepalive_grace

    def _log_receive_timeout(self) -> None:
        if self.state is SessionState.AWAITING_WELCOME:
            self._log.error("No session_welcome within %.1f seconds", self.welcome_timeout)
        else:
            self._log.error("No message within the keepalive window; connection considered dead")

    async def run(self) -> None:
        """Connect and process frames until the socket closes or ``stop`` is called.

        Never raises for connection problems; they end the session in CLOSED.
        """
        try:
            self._ws = await self.http.session.ws_connect(self.url)
        except (aiohttp.ClientError, AsyncCommError, OSError) as err:
            self._log.error("Websocket connection to %s failed: %s", self.url, err)
            self.state = SessionState.CLOSED
            return

        self._log.info("Bot Websocket connection opened to %s", self.url)
        if self.state is SessionState.CONNECTING:
            self.state = SessionState.AWAITING_WELCOME
            self._welcome_deadline = asyncio.get_running_loop().time() + self.welcome_timeout

        try:
            await self._receive_loop(self._ws)
        finally:
            await self.stop()

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while self.state is not SessionState.CLOSED:
            timeout: float = self._receive_timeout()
            if timeout <= 0:
                self._log_receive_timeout()
                return
            try:
                message: aiohttp.WSMessage = await ws.receive(timeout=timeout)
            except TimeoutError:
                self._log_receive_timeout()
                return

            if message.type is aiohttp.WSMsgType.TEXT:
                try:
                    frame: Any = json.loads(message.data)
                except json.JSONDecodeError as err:
                    self._log.warning("Discarding non-JSON frame: %s", err)
                    continue
                await self.handle_frame(frame)
            elif message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                self._log.warning("Websocket closed by server (code=%s)", ws.close_code)
                return
            elif message.type is aiohttp.WSMsgType.ERROR:
                self._log.error("Websocket error: %s", ws.exception())
                return

    async def handle_frame(self, frame: Any) -> None:
        """Process one decoded JSON frame.

        Args:
            frame (Any): ``{"metadata": {...}, "payload": {...}}``.
        """
        if not isinstance(frame, dict):
            self._log.warning("Discarding frame that is not an object")
            return
        try:
            metadata: WebSocketMetadata = WebSocketMetadata.from_dict(frame.get("metadata") or {})
        except (KeyError, TypeError, ValueError, AttributeError, NotificationDecodeError) as err:
            self._log.warning("Discarding frame with malformed metadata: %s", err)
            return

        payload: Any = frame.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        message_type: str = metadata.message_type
        if self.state is SessionState.AWAITING_WELCOME and message_type != "session_welcome":
            self._log.warning("Ignoring %s received before session_welcome", message_type)
            return

        if message_type == "session_welcome":
            await self._on_welcome(payload)
        elif message_type == "session_keepalive":
            return
        elif message_type == "notification":
            await self._on_notification(metadata, payload)
        elif message_type == "session_reconnect":
            session: Any = payload.get("session")
            reconnect_url: Any = session.get("reconnect_url") if isinstance(session, dict) else None
            self._log.warning("Server requested a reconnect to %s; not following it", reconnect_url)
        elif message_type == "revocation":
            subscription: Any = payload.get("subscription")
            status: Any = subscription.get("status") if isinstance(subscription, dict) else None
            self._log.warning("Subscription revoked: %s", status)
        else:
            self._log.debug("Ignoring message type %s", message_type)

    async def _on_welcome(self, payload: Any) -> None:
        if self.state is SessionState.CLOSED:
            return
        if self.session_id is not None:
            self._log.warning("Ignoring repeated session_welcome")
            return
        try:
            session: SessionInfo = SessionInfo.from_dict(payload.get("session") or {})
        except (KeyError, TypeError, ValueError, AttributeError, NotificationDecodeError) as err:
            self._log.error("Malformed session_welcome: %s", err)
            await self.stop()
            return

        self.session_id = session.id
        if session.keepalive_timeout_seconds:
            self.keepalive_timeout = float(session.keepalive_timeout_seconds)
        self._log.info("Session %s established (keepalive %.0fs)", self.session_id, self.keepalive_timeout)

        if not await self.register_subscription():
            await self.stop()
            return
        if self.state is not SessionState.CLOSED:
            self.state = SessionState.ACTIVE

    async def register_subscription(self) -> bool:
        """Register the chat subscription for the current session.

        Returns:
            bool: True if the subscription was registered now or earlier. False if no
            welcome has been received yet or the registration failed.
        """
        if self.session_id is None or self.state is SessionState.CLOSED:
            self._log.error("Cannot register a subscription before session_welcome")
            return False
        if self._registered:
            return True

        try:
            await self._register(self.session_id)
        except (SubscriptionError, AsyncCommError) as err:
            self._log.error("Failed to register subscription for session %s: %s", self.session_id, err)
            return False
        self._registered = True
        return True

    async def _on_notification(self, metadata: WebSocketMetadata, payload: Any) -> None:
        if self.state is not SessionState.ACTIVE:
            self._log.warning("Ignoring notification %s received before the session is active", metadata.message_id)
            return
        try:
            notification: EventSubNotification = decode_notification(payload)
        except NotificationDecodeError as err:
            self._log.error("Rejected notification %s: %s", metadata.message_id, err)
            return

        event: ChatEvent = notification.event.to_chat_event()
        self._log.info("MSG #%s <%s> %s", event.broadcaster.login, event.chatter.login, event.text)
        if self.on_chat_event is not None:
            try:
                await self.on_chat_event(event)
            except Exception:  # noqa: BLE001
                self._log.exception("Chat event handler failed for %s", metadata.message_id)

    async def stop(self) -> None:
        """Close the socket and end the session. Safe to call more than once."""
        self.state = SessionState.CLOSED
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
            self._log.info("Websocket connection closed")
