"""API endpoints package for the poll service."""

from xpoll.app.api.auth import router as auth_router
from xpoll.app.api.csrf import router as csrf_router
from xpoll.app.api.polls import router as polls_router
from xpoll.app.api.session import router as session_router

__all__ = [
    "auth_router",
    "csrf_router",
    "polls_router",
    "session_router",
]
