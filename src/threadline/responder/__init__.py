"""Agent responder boundary and background dispatch."""

from threadline.responder.base import AgentResponder, EchoResponder, Reply, derive_topic
from threadline.responder.dispatcher import ResponderDispatcher

__all__ = [
    "AgentResponder",
    "EchoResponder",
    "Reply",
    "ResponderDispatcher",
    "derive_topic",
]
