"""Client-side helpers for the poll service."""

from xpoll.client.session_monitor import (
    ACTIVITY_EVENTS,
    FileMarkerStore,
    InMemoryMarkerStore,
    MarkerStore,
    MonitorConfig,
    SessionMonitor,
)

__all__ = [
    "ACTIVITY_EVENTS",
    "FileMarkerStore",
    "InMemoryMarkerStore",
    "MarkerStore",
    "MonitorConfig",
    "SessionMonitor",
]
