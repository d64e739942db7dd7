"""Data models for EventSub payloads.

Payloads arriving over the webhook and the WebSocket share the same ``subscription`` and
``event`` objects. ``decode_notification`` picks the event class by subscription type, so
an unknown type or a malformed event is rejected in one place for both transports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from dataclasses_json import DataClassJsonMixin, dataclass_json

from models.command_models import Badge, ChatEvent, ChatUser
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Mapping


__all__: list[str] = [
    "CHAT_MESSAGE_SUBSCRIPTION",
    "NOTIFICATION_EVENT_TYPES",
    "ChatMessageEvent",
    "EventSubNotification",
    "NotificationDecodeError",
    "SessionInfo",
    "Subscription",
    "Transport",
    "VerificationChallenge",
    "WebSocketMetadata",
    "decode_challenge",
    "decode_notification",
    "decode_subscription",
]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

CHAT_MESSAGE_SUBSCRIPTION: Final[str] = "channel.chat.message"

# errors dataclasses_json lets through for missing keys or wrongly shaped values
_DECODE_ERRORS: Final[tuple[type[Exception], ...]] = (KeyError, TypeError, ValueError, AttributeError)


class NotificationDecodeError(Exception):
    """An EventSub payload does not match the expected shape."""


def _require_str(owner: str, name: str, value: Any, *, allow_empty: bool = False) -> None:
    if not isinstance(value, str) or (not allow_empty and not value):
        msg: str = f"{owner}.{name} must be a {'string' if allow_empty else 'non-empty string'}: {value!r}"
        raise NotificationDecodeError(msg)


@dataclass_json
@dataclass
class Transport(DataClassJsonMixin):
    """Delivery target of a subscription: a webhook callback or a WebSocket session."""

    method: str
    callback: str | None = None
    session_id: str | None = None
    secret: str | None = None

    def __post_init__(self) -> None:
        _require_str("transport", "method", self.method)

    def __repr__(self) -> str:
        return f"Transport(method={self.method}, callback={self.callback}, session_id={self.session_id})"

    @property
    def target(self) -> str:
        """Callback URL or session id, whichever applies to the method."""
        return (self.callback if self.method == "webhook" else self.session_id) or ""


@dataclass_json
@dataclass
class Subscription(DataClassJsonMixin):
    """EventSub subscription as reported by Twitch."""

    id: str
    type: str
    version: str
    status: str
    condition: dict[str, str]
    transport: Transport
    created_at: str = ""
    cost: int = 0

    def __post_init__(self) -> None:
        for name in ("id", "type", "version", "status"):
            _require_str("subscription", name, getattr(self, name))
        if not isinstance(self.condition, dict):
            msg: str = f"subscription.condition must be an object: {self.condition!r}"
            raise NotificationDecodeError(msg)
        if not isinstance(self.transport, Transport):
            msg = f"subscription.transport must be an object: {self.transport!r}"
            raise NotificationDecodeError(msg)

    @property
    def is_enabled(self) -> bool:
        return self.status == "enabled"


@dataclass_json
@dataclass
class _Badge(DataClassJsonMixin):
    set_id: str
    id: str = ""
    info: str = ""


@dataclass_json
@dataclass
class _Fragment(DataClassJsonMixin):
    type: str = "text"
    text: str = ""


@dataclass_json
@dataclass
class _MessageBody(DataClassJsonMixin):
    text: str
    fragments: list[_Fragment] = field(default_factory=list)

    def __post_init__(self) -> None:
        _require_str("message", "text", self.text, allow_empty=True)


@dataclass_json
@dataclass
class ChatMessageEvent(DataClassJsonMixin):
    """Event body of a ``channel.chat.message`` notification."""

    broadcaster_user_id: str
    broadcaster_user_login: str
    broadcaster_user_name: str
    chatter_user_id: str
    chatter_user_login: str
    chatter_user_name: str
    message_id: str
    message: _MessageBody
    badges: list[_Badge] = field(default_factory=list)
    color: str = ""
    message_type: str = "text"

    def __post_init__(self) -> None:
        for name in ("broadcaster_user_id", "chatter_user_id", "message_id"):
            _require_str("event", name, getattr(self, name))
        if not isinstance(self.message, _MessageBody):
            msg: str = f"event.message must be an object: {self.message!r}"
            raise NotificationDecodeError(msg)
        if self.badges is None:
            self.badges = []
        if not isinstance(self.badges, list) or not all(isinstance(b, _Badge) for b in self.badges):
            msg = f"event.badges must be a list of badge objects: {self.badges!r}"
            raise NotificationDecodeError(msg)

    def to_chat_event(self) -> ChatEvent:
        """Convert to the transport-independent chat event handed to the bot."""
        return ChatEvent(
            message_id=self.message_id,
            broadcaster=ChatUser(
                id=self.broadcaster_user_id,
                login=self.broadcaster_user_login,
                name=self.broadcaster_user_name,
            ),
            chatter=ChatUser(
                id=self.chatter_user_id,
                login=self.chatter_user_login,
                name=self.chatter_user_name,
            ),
            text=self.message.text,
            badges=tuple(Badge(set_id=b.set_id, id=b.id, info=b.info) for b in self.badges),
        )


# subscription type -> event class; extend this to accept more notification kinds
NOTIFICATION_EVENT_TYPES: Final[dict[str, type[ChatMessageEvent]]] = {
    CHAT_MESSAGE_SUBSCRIPTION: ChatMessageEvent,
}


@dataclass(frozen=True)
class EventSubNotification:
    """Decoded notification: the subscription it belongs to and its typed event."""

    subscription: Subscription
    event: ChatMessageEvent

    @property
    def type(self) -> str:
        return self.subscription.type


@dataclass(frozen=True)
class VerificationChallenge:
    """Body of a ``webhook_callback_verification`` request."""

    challenge: str
    subscription: Subscription | None = None


@dataclass_json
@dataclass
class WebSocketMetadata(DataClassJsonMixin):
    """``metadata`` object of a WebSocket frame."""

    message_id: str
    message_type: str
    message_timestamp: str
    subscription_type: str | None = None
    subscription_version: str | None = None

    def __post_init__(self) -> None:
        _require_str("metadata", "message_type", self.message_type)


@dataclass_json
@dataclass
class SessionInfo(DataClassJsonMixin):
    """``payload.session`` object of welcome and reconnect frames."""

    id: str
    status: str = ""
    connected_at: str = ""
    keepalive_timeout_seconds: int | None = None
    reconnect_url: str | None = None

    def __post_init__(self) -> None:
        _require_str("session", "id", self.id)


def _as_mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        msg: str = f"'{name}' must be a JSON object"
        raise NotificationDecodeError(msg)
    return value


def decode_subscription(value: Any) -> Subscription:
    """Decode a ``subscription`` object.

    Raises:
        NotificationDecodeError: If the object is missing or malformed.
    """
    try:
        return Subscription.from_dict(_as_mapping(value, "subscription"))  # type: ignore[arg-type]
    except _DECODE_ERRORS as err:
        msg: str = f"Malformed subscription object: {err}"
        raise NotificationDecodeError(msg) from err


def decode_notification(payload: Any) -> EventSubNotification:
    """Decode a notification payload ``{subscription, event}`` by subscription type.

    Args:
        payload (Any): Parsed JSON body (webhook) or ``payload`` object (WebSocket).

    Returns:
        EventSubNotification: Subscription plus typed event.

    Raises:
        NotificationDecodeError: If the subscription type is unknown or the payload is malformed.
    """
    body: Mapping[str, Any] = _as_mapping(payload, "payload")
    subscription: Subscription = decode_subscription(body.get("subscription"))

    event_cls: type[ChatMessageEvent] | None = NOTIFICATION_EVENT_TYPES.get(subscription.type)
    if event_cls is None:
        msg: str = f"Unsupported subscription type: {subscription.type}"
        raise NotificationDecodeError(msg)

    try:
        event: ChatMessageEvent = event_cls.from_dict(_as_mapping(body.get("event"), "event"))  # type: ignore[arg-type]
    except _DECODE_ERRORS as err:
        msg = f"Malformed '{subscription.type}' event: {err}"
        raise NotificationDecodeError(msg) from err

    logger.debug("Decoded '%s' notification %s", subscription.type, event.message_id)
    return EventSubNotification(subscription=subscription, event=event)


def decode_challenge(payload: Any) -> VerificationChallenge:
    """Decode a ``webhook_callback_verification`` body.

    Raises:
        NotificationDecodeError: If ``challenge`` is missing or ``subscription`` is malformed.
    """
    body: Mapping[str, Any] = _as_mapping(payload, "payload")
    challenge: Any = body.get("challenge")
    if not isinstance(challenge, str) or not challenge:
        msg: str = "Verification request has no challenge"
        raise NotificationDecodeError(msg)

    subscription: Subscription | None = None
    if body.get("subscription") is not None:
        subscription = decode_subscription(body["subscription"])
    return VerificationChallenge(challenge=challenge, subscription=subscription)
