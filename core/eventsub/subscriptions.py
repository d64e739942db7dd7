"""EventSub subscription management through the Helix REST API.

``SubscriptionManager`` keeps exactly one enabled ``channel.chat.message`` subscription per
bot identity pointed at the endpoint currently in use: stale subscriptions targeting an
old callback URL or a dead WebSocket session are deleted before a new one is created,
and nothing is created if a matching subscription already exists.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

from handlers.async_comm import ApiRequest
from models.eventsub_models import (
    CHAT_MESSAGE_SUBSCRIPTION,
    NotificationDecodeError,
    Subscription,
    decode_subscription,
)
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging

    from core.token_refresher import TokenRefresher
    from handlers.async_comm import ApiResponse


__all__: list[str] = ["SUBSCRIPTIONS_URL", "SubscriptionError", "SubscriptionManager"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

SUBSCRIPTIONS_URL: Final[str] = "https://api.twitch.tv/helix/eventsub/subscriptions"
CHAT_MESSAGE_VERSION: Final[str] = "1"


class SubscriptionError(Exception):
    """A subscription could not be listed or created."""


class SubscriptionManager:
    """Manage the chat subscription of one bot identity.

    Args:
        refresher (TokenRefresher): Sends the calls with the right token. Webhook
            subscriptions need the app access token, WebSocket subscriptions the bot's
            user access token.
        client_id (str): Twitch application client id.
        bot_user_id (str): User id of the bot account.
        channel_user_id (str): User id of the channel the bot chats in.
        log (logging.Logger | logging.LoggerAdapter | None): Logger, usually identity-prefixed.
    """

    def __init__(
        self,
        *,
        refresher: TokenRefresher,
        client_id: str,
        bot_user_id: str,
        channel_user_id: str,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.refresher: TokenRefresher = refresher
        self.client_id: str = client_id
        self.bot_user_id: str = bot_user_id
        self.channel_user_id: str = channel_user_id
        self._log: logging.Logger | logging.LoggerAdapter = log or logger

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    @property
    def chat_condition(self) -> dict[str, str]:
        return {"broadcaster_user_id": self.channel_user_id, "user_id": self.bot_user_id}

    async def list_subscriptions(self, user_id: str | None = None) -> list[Subscription]:
        """List the subscriptions involving ``user_id`` (the bot by default), all pages.

        Raises:
            SubscriptionError: If the API call fails.
        """
        subscriptions: list[Subscription] = []
        cursor: str | None = None
        while True:
            params: dict[str, str] = {"user_id": user_id or self.bot_user_id}
            if cursor:
                params["after"] = cursor

            response: ApiResponse = await self.refresher.execute(
                lambda token, params=params: ApiRequest(
                    method="GET", url=SUBSCRIPTIONS_URL, headers=self._headers(token), params=params
                )
            )
            if response.status != 200:
                msg: str = f"Listing subscriptions returned status {response.status}: {response.text}"
                raise SubscriptionError(msg)

            try:
                body: Any = response.json() or {}
            except ValueError as err:
                msg = f"Listing subscriptions returned a body that is not JSON: {err}"
                raise SubscriptionError(msg) from err
            if not isinstance(body, dict) or not isinstance(body.get("data") or [], list):
                msg = f"Listing subscriptions returned an unexpected body: {response.text[:200]}"
                raise SubscriptionError(msg)

            for item in body.get("data") or []:
                try:
                    subscriptions.append(decode_subscription(item))
                except NotificationDecodeError as err:
                    self._log.warning("Skipping malformed subscription entry: %s", err)

            pagination: Any = body.get("pagination")
            cursor = pagination.get("cursor") if isinstance(pagination, dict) else None
            if not cursor:
                return subscriptions

    async def create(
        self,
        subscription_type: str,
        version: str,
        condition: dict[str, str],
        transport: dict[str, str],
    ) -> Subscription:
        """Create a subscription; Twitch answers 202 Accepted.

        Raises:
            SubscriptionError: If the API does not accept the subscription.
        """
        payload: dict[str, Any] = {
            "type": subscription_type,
            "version": version,
            "condition": condition,
            "transport": transport,
        }
        response: ApiResponse = await self.refresher.execute(
            lambda token: ApiRequest(method="POST", url=SUBSCRIPTIONS_URL, headers=self._headers(token), json=payload)
        )
        if response.status != 202:
            self._log.error(
                "Failed to subscribe to %s. API call returned status code %d: %s",
                subscription_type,
                response.status,
                response.text,
            )
            msg: str = f"Subscription to {subscription_type} was not accepted ({response.status})"
            raise SubscriptionError(msg)

        try:
            subscription: Subscription = decode_subscription(((response.json() or {}).get("data") or [None])[0])
        except (NotificationDecodeError, ValueError, AttributeError, LookupError, TypeError) as err:
            msg = f"Subscription to {subscription_type} was accepted but the answer is malformed: {err}"
            raise SubscriptionError(msg) from err

        self._log.info("Subscribed to %s [%s]", subscription_type, subscription.id)
        return subscription

    async def delete(self, subscription_id: str) -> bool:
        """Delete a subscription. Returns True if Twitch confirmed it."""
        response: ApiResponse = await self.refresher.execute(
            lambda token: ApiRequest(
                method="DELETE", url=SUBSCRIPTIONS_URL, headers=self._headers(token), params={"id": subscription_id}
            )
        )
        if not response.ok:
            self._log.warning("Deleting subscription %s returned status %d", subscription_id, response.status)
        return response.ok

    def _is_own_chat_subscription(self, subscription: Subscription) -> bool:
        return (
            subscription.type == CHAT_MESSAGE_SUBSCRIPTION
            and subscription.is_enabled
            and subscription.condition.get("user_id", self.bot_user_id) == self.bot_user_id
            and subscription.condition.get("broadcaster_user_id", self.channel_user_id) == self.channel_user_id
        )

    async def ensure(self, transport: dict[str, str]) -> Subscription | None:
        """Make the chat subscription target ``transport``.

        Enabled chat subscriptions of this identity pointing anywhere else are deleted.

        Args:
            transport (dict[str, str]): ``{"method": "webhook", "callback", "secret"}`` or
                ``{"method": "websocket", "session_id"}``.

        Returns:
            Subscription | None: The new subscription, or None if one already existed.

        Raises:
            SubscriptionError: If listing or creating fails.
        """
        method: str = transport["method"]
        target: str = transport.get("callback" if method == "webhook" else "session_id", "")

        listed: list[Subscription] = await self.list_subscriptions()
        existing: list[Subscription] = [s for s in listed if self._is_own_chat_subscription(s)]
        for subscription in existing:
            if subscription.transport.method == method and subscription.transport.target == target:
                continue
            self._log.debug("Deleting stale subscription %s -> %s", subscription.id, subscription.transport)
            await self.delete(subscription.id)

        if any(s.transport.method == method and s.transport.target == target for s in existing):
            self._log.info("Subscription to %s already exists", CHAT_MESSAGE_SUBSCRIPTION)
            return None

        return await self.create(CHAT_MESSAGE_SUBSCRIPTION, CHAT_MESSAGE_VERSION, self.chat_condition, transport)

    async def ensure_webhook(self, callback: str, secret: str) -> Subscription | None:
        return await self.ensure({"method": "webhook", "callback": callback, "secret": secret})

    async def ensure_websocket(self, session_id: str) -> Subscription | None:
        return await self.ensure({"method": "websocket", "session_id": session_id})
