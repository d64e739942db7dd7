"""Webhook ingress for EventSub deliveries.

Every request is authenticated with the HMAC-SHA256 signature Twitch computes over
``message id + timestamp + raw body`` using the subscription secret, deduplicated by
message id, and then answered according to its message type.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from models.eventsub_models import NotificationDecodeError, decode_challenge, decode_notification
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Awaitable, Callable, Mapping

    from core.eventsub.replay_guard import ReplayCheck, ReplayGuard
    from models.command_models import ChatEvent
    from models.eventsub_models import EventSubNotification, VerificationChallenge

    type ChatEventHandler = Callable[[ChatEvent], Awaitable[Any]]


__all__: list[str] = [
    "HEADER_MESSAGE_ID",
    "HEADER_MESSAGE_SIGNATURE",
    "HEADER_MESSAGE_TIMESTAMP",
    "HEADER_MESSAGE_TYPE",
    "WebhookIngress",
    "WebhookResult",
    "compute_signature",
    "verify_signature",
]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

HEADER_MESSAGE_TYPE: Final[str] = "Twitch-Eventsub-Message-Type"
HEADER_MESSAGE_ID: Final[str] = "Twitch-Eventsub-Message-Id"
HEADER_MESSAGE_TIMESTAMP: Final[str] = "Twitch-Eventsub-Message-Timestamp"
HEADER_MESSAGE_SIGNATURE: Final[str] = "Twitch-Eventsub-Message-Signature"
HEADER_MESSAGE_RETRY: Final[str] = "Twitch-Eventsub-Message-Retry"
HEADER_SUBSCRIPTION_TYPE: Final[str] = "Twitch-Eventsub-Subscription-Type"
HEADER_SUBSCRIPTION_VERSION: Final[str] = "Twitch-Eventsub-Subscription-Version"

MESSAGE_TYPE_VERIFICATION: Final[str] = "webhook_callback_verification"
MESSAGE_TYPE_NOTIFICATION: Final[str] = "notification"
MESSAGE_TYPE_REVOCATION: Final[str] = "revocation"

SIGNATURE_PREFIX: Final[str] = "sha256="


def compute_signature(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    """Return ``sha256=<hex HMAC-SHA256(secret, id + timestamp + body)>``."""
    message: bytes = message_id.encode("utf-8") + timestamp.encode("utf-8") + body
    digest: str = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, message_id: str, timestamp: str, body: bytes, signature: str | None) -> bool:
    """Check a delivery signature in constant time. A missing signature never verifies."""
    if not signature:
        return False
    expected: str = compute_signature(secret, message_id, timestamp, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


@dataclass(frozen=True)
class WebhookResult:
    """HTTP answer for one delivery.

    Attributes:
        status (int): HTTP status code.
        text (str): Plain text body; the challenge for verification requests.
        notification (EventSubNotification | None): The decoded notification, if one was dispatched.
    """

    status: int
    text: str = ""
    notification: EventSubNotification | None = None


class WebhookIngress:
    """Validate, deduplicate and dispatch webhook deliveries of one bot identity.

    Args:
        secret (str): HMAC secret the subscriptions were created with.
        replay_guard (ReplayGuard): Store of seen message ids.
        on_chat_event (ChatEventHandler | None): Receives each new chat event. It is awaited
            before the delivery is acknowledged.
        log (logging.Logger | logging.LoggerAdapter | None): Logger, usually identity-prefixed.
    """

    def __init__(
        self,
        *,
        secret: str,
        replay_guard: ReplayGuard,
        on_chat_event: ChatEventHandler | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if not secret:
            msg: str = "The webhook secret is empty."
            raise ValueError(msg)
        self._secret: str = secret
        self.replay_guard: ReplayGuard = replay_guard
        self.on_chat_event: ChatEventHandler | None = on_chat_event
        self._log: logging.Logger | logging.LoggerAdapter = log or logger

    async def handle(self, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        """Process one delivery.

        Args:
            headers (Mapping[str, str]): Request headers; names are matched case-insensitively.
            body (bytes): The raw request body, exactly as received.

        Returns:
            WebhookResult: Status and body to answer with.
        """
        lowered: dict[str, str] = {key.lower(): value for key, value in headers.items()}
        message_id: str = lowered.get(HEADER_MESSAGE_ID.lower(), "")
        timestamp: str = lowered.get(HEADER_MESSAGE_TIMESTAMP.lower(), "")
        message_type: str = lowered.get(HEADER_MESSAGE_TYPE.lower(), "")

        if not message_id or not timestamp:
            self._log.error("Missing message id or timestamp header")
            return WebhookResult(status=400)

        signature: str | None = lowered.get(HEADER_MESSAGE_SIGNATURE.lower())
        if not verify_signature(self._secret, message_id, timestamp, body, signature):
            self._log.error("Message not verified: %s", message_id)
            return WebhookResult(status=403)

        if not body:
            self._log.error("No event body: %s", message_id)
            return WebhookResult(status=400)

        check: ReplayCheck = await self.replay_guard.check_and_mark(message_id, timestamp)
        if not check.is_new:
            retry: str = lowered.get(HEADER_MESSAGE_RETRY.lower(), "")
            self._log.info("Duplicate delivery %s acknowledged (retry=%s)", message_id, retry or "-")
            return WebhookResult(status=200)

        payload: Any
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as err:
            self._log.error("Body of %s is not valid JSON: %s", message_id, err)
            return WebhookResult(status=400)

        self._log.debug("Message type: %s", message_type)
        if message_type == MESSAGE_TYPE_VERIFICATION:
            return self._handle_verification(payload)
        if message_type == MESSAGE_TYPE_NOTIFICATION:
            return await self._handle_notification(message_id, payload)
        if message_type == MESSAGE_TYPE_REVOCATION:
            self._handle_revocation(payload)
            return WebhookResult(status=400)

        self._log.error("Invalid message type: %r", message_type)
        return WebhookResult(status=400)

    def _handle_verification(self, payload: Any) -> WebhookResult:
        try:
            challenge: VerificationChallenge = decode_challenge(payload)
        except NotificationDecodeError as err:
            self._log.error("Invalid verification request: %s", err)
            return WebhookResult(status=400)

        if challenge.subscription is not None:
            self._log.info(
                "Verified subscription %s (%s)", challenge.subscription.id, challenge.subscription.type
            )
        return WebhookResult(status=200, text=challenge.challenge)

    async def _handle_notification(self, message_id: str, payload: Any) -> WebhookResult:
        try:
            notification: EventSubNotification = decode_notification(payload)
        except NotificationDecodeError as err:
            self._log.error("Rejected notification %s: %s", message_id, err)
            return WebhookResult(status=400)

        event: ChatEvent = notification.event.to_chat_event()
        self._log.info("MSG #%s <%s> %s", event.broadcaster.login, event.chatter.login, event.text)
        if self.on_chat_event is not None:
            try:
                await self.on_chat_event(event)
            except Exception:  # noqa: BLE001
                # already marked as seen; still acknowledged
                self._log.exception("Chat event handler failed for %s", message_id)
        return WebhookResult(status=200, notification=notification)

    def _handle_revocation(self, payload: Any) -> None:
        subscription: Any = payload.get("subscription") if isinstance(payload, dict) else None
        if isinstance(subscription, dict):
            self._log.warning(
                "Subscription %s (%s) revoked: %s",
                subscription.get("id"),
                subscription.get("type"),
                subscription.get("status"),
            )
        else:
            self._log.warning("Revocation received without a subscription object")
