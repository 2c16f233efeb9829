"""
Threadline: durable conversation sessions for a hosted agent API.

Quick start::

    from threadline import SessionService, EchoResponder

    async with SessionService.open(responder=EchoResponder()) as service:
        session = await service.create_session("cred_123", "Plan my trip")
        await service.dispatcher.wait_for_pending()
        page = await service.list_messages("cred_123", session.id)
"""

from threadline.errors import (
    InternalError,
    MessageNotFoundError,
    RateLimitedError,
    SessionNotActiveError,
    SessionNotFoundError,
    ThreadlineError,
    UnauthorizedError,
    ValidationError,
)
from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import (
    RateLimitConfig,
    ResponderConfig,
    SessionConfig,
    StoreConfig,
    ThreadlineConfig,
)
from threadline.models.message import Message, MessageDraft, MessageType, Order
from threadline.models.session import Session, SessionStatus
from threadline.ratelimit.limiter import Decision, RateLimiter
from threadline.responder.base import AgentResponder, EchoResponder, Reply
from threadline.service import SessionService
from threadline.store.messages import MessageLog
from threadline.store.pool import StorePool
from threadline.store.sessions import SessionStore

__version__ = "0.1.0"

__all__ = [
    # Core
    "SessionService",
    "SessionStore",
    "MessageLog",
    "StorePool",
    "RateLimiter",
    "Decision",
    # Responder
    "AgentResponder",
    "EchoResponder",
    "Reply",
    # Models
    "Message",
    "MessageDraft",
    "MessageType",
    "Order",
    "Session",
    "SessionStatus",
    # Config
    "RateLimitConfig",
    "ResponderConfig",
    "SessionConfig",
    "StoreConfig",
    "ThreadlineConfig",
    # Events
    "EventBus",
    "ThreadlineEvent",
    # Errors
    "InternalError",
    "MessageNotFoundError",
    "RateLimitedError",
    "SessionNotActiveError",
    "SessionNotFoundError",
    "ThreadlineError",
    "UnauthorizedError",
    "ValidationError",
]
