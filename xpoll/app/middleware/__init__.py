"""Middleware package for the poll service."""

from xpoll.app.middleware.csrf import CSRFGuard, CSRFProtectionMiddleware
from xpoll.app.middleware.rate_limit import FixedWindowRateLimiter, RateLimitMiddleware
from xpoll.app.middleware.request_id import RequestIdMiddleware, get_request_id
from xpoll.app.middleware.security_headers import SecurityHeadersMiddleware
from xpoll.app.middleware.session import SessionGuard, SessionMiddleware

__all__ = [
    "CSRFGuard",
    "CSRFProtectionMiddleware",
    "FixedWindowRateLimiter",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
    "SecurityHeadersMiddleware",
    "SessionGuard",
    "SessionMiddleware",
]
