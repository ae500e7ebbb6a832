"""Subscription fan-out and push transport management."""

from .hub import Subscription, SubscriptionHub, SubscriptionStream, UpstreamFeed
from .transport import (
    ALLOWED_TRANSITIONS,
    BackoffPolicy,
    PushTransport,
    TransportManager,
    TransportMessage,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BackoffPolicy",
    "PushTransport",
    "Subscription",
    "SubscriptionHub",
    "SubscriptionStream",
    "TransportManager",
    "TransportMessage",
    "UpstreamFeed",
    "can_transition",
]
