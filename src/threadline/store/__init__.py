"""Threadline persistence layer."""

from threadline.store.base import Clock, SQLiteStore
from threadline.store.messages import MessageLog
from threadline.store.pool import StorePool
from threadline.store.sessions import SessionStore

__all__ = [
    "Clock",
    "MessageLog",
    "SQLiteStore",
    "SessionStore",
    "StorePool",
]
