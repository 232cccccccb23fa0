"""Core utilities for the poll service."""

from xpoll.app.core.config import settings
from xpoll.app.core.logging import get_logger, setup_logging
from xpoll.app.core.store import (
    InMemoryStore,
    RedisStore,
    StateStore,
    get_store,
)

__all__ = [
    "StateStore",
    "InMemoryStore",
    "RedisStore",
    "get_store",
    "settings",
    "get_logger",
    "setup_logging",
]
