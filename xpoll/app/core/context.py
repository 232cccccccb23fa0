"""Request-scoped context for log correlation.

Uses a context variable so the value follows the request through every
awaited call without being passed around explicitly.
"""

from contextvars import ContextVar
from typing import Optional

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_current_request_id() -> Optional[str]:
    """Get the request ID of the request being handled, if any."""
    return _request_id_var.get()


def set_current_request_id(request_id: Optional[str]) -> None:
    """Set the request ID for the current context, or None to clear it."""
    _request_id_var.set(request_id)
