"""Threadline event bus."""

from threadline.events.bus import EventBus, Handler, ThreadlineEvent
from threadline.events.payloads import (
    MessageAppendedPayload,
    RateLimitedPayload,
    ResponderFailedPayload,
    SessionClosedPayload,
    SessionCreatedPayload,
    SessionExpiredPayload,
    TopicAssignedPayload,
)

__all__ = [
    "EventBus",
    "Handler",
    "MessageAppendedPayload",
    "RateLimitedPayload",
    "ResponderFailedPayload",
    "SessionClosedPayload",
    "SessionCreatedPayload",
    "SessionExpiredPayload",
    "ThreadlineEvent",
    "TopicAssignedPayload",
]
