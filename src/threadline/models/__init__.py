"""Threadline data models."""

from threadline.models.config import (
    RateLimitConfig,
    ResponderConfig,
    SessionConfig,
    StoreConfig,
    ThreadlineConfig,
)
from threadline.models.message import (
    MESSAGE_TYPES,
    USER_MESSAGE_MAX_CHARS,
    Message,
    MessageDraft,
    MessageType,
    Order,
)
from threadline.models.session import Session, SessionStatus, make_id

__all__ = [
    # Config
    "RateLimitConfig",
    "ResponderConfig",
    "SessionConfig",
    "StoreConfig",
    "ThreadlineConfig",
    # Messages
    "MESSAGE_TYPES",
    "USER_MESSAGE_MAX_CHARS",
    "Message",
    "MessageDraft",
    "MessageType",
    "Order",
    # Sessions
    "Session",
    "SessionStatus",
    "make_id",
]
