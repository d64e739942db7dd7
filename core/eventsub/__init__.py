"""EventSub transports: signed webhooks, the WebSocket session and subscription management."""

from core.eventsub.realtime import RealtimeSession, SessionState
from core.eventsub.replay_guard import ReplayCheck, ReplayGuard
from core.eventsub.server import EventSubServer
from core.eventsub.subscriptions import SubscriptionError, SubscriptionManager
from core.eventsub.webhook import WebhookIngress, WebhookResult, compute_signature, verify_signature

__all__: list[str] = [
    "EventSubServer",
    "RealtimeSession",
    "ReplayCheck",
    "ReplayGuard",
    "SessionState",
    "SubscriptionError",
    "SubscriptionManager",
    "WebhookIngress",
    "WebhookResult",
    "compute_signature",
    "verify_signature",
]
