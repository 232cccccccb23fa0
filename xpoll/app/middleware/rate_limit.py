"""Rate limiting middleware for the poll API.

Requests are counted per (limit class, client identity) in fixed windows.
Each limit class is one category of endpoints sharing a quota: generic API
calls, poll creation, voting and authentication.
"""

import math
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from xpoll.app.core.config import Settings, settings
from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.core.store import InMemoryStore, KeyedLock, StateStore
from xpoll.app.exceptions import RateLimitExceededError

logger = get_logger(__name__)

DEFAULT_CLASS = "default"
CREATE_POLL_CLASS = "createPoll"
VOTE_CLASS = "vote"
AUTH_CLASS = "auth"


@dataclass(frozen=True)
class RateLimitRule:
    """Quota for one limit class."""
    max_requests: int
    window_seconds: float

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_time`` is the epoch time (seconds) at which the current window
    ends. ``retry_after`` is only set on rejection.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: Optional[int] = None

    def headers(self) -> dict[str, str]:
        """Build the X-RateLimit-* (and Retry-After) response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def build_default_rules(config: Settings = settings) -> dict[str, RateLimitRule]:
    """Build the per-class quotas from settings."""
    return {
        DEFAULT_CLASS: RateLimitRule(
            config.rate_limit_default_requests, config.rate_limit_default_window_seconds
        ),
        CREATE_POLL_CLASS: RateLimitRule(
            config.rate_limit_create_poll_requests, config.rate_limit_create_poll_window_seconds
        ),
        VOTE_CLASS: RateLimitRule(
            config.rate_limit_vote_requests, config.rate_limit_vote_window_seconds
        ),
        AUTH_CLASS: RateLimitRule(
            config.rate_limit_auth_requests, config.rate_limit_auth_window_seconds
        ),
    }


class FixedWindowRateLimiter:
    """Fixed-window request counter.

    The first request for a key, or the first one after the window has
    ended, opens a new window with ``count=1``. Further requests increment
    the count until it reaches ``max_requests``; after that they are
    rejected until the window ends.

    A client can get up to twice the quota through around a window
    boundary (a full window just before reset, another just after).

    Every call may also sweep expired buckets with probability
    ``sweep_probability``, which bounds memory without a timer.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
        sweep_probability: float = 0.01,
        random_fn: Callable[[], float] = random.random,
    ):
        if DEFAULT_CLASS not in rules:
            raise ValueError(f"rules must define a '{DEFAULT_CLASS}' limit class")
        self.rules = dict(rules)
        self._store = store if store is not None else InMemoryStore(clock=clock)
        self._clock = clock
        self._sweep_probability = sweep_probability
        self._random = random_fn
        self._locks = KeyedLock()

    @property
    def store(self) -> StateStore:
        return self._store

    def rule_for(self, limit_class: str) -> RateLimitRule:
        """Get the quota for a limit class, falling back to the default class."""
        return self.rules.get(limit_class) or self.rules[DEFAULT_CLASS]

    @staticmethod
    def bucket_key(limit_class: str, client_identity: str) -> str:
        return f"{limit_class}:{client_identity}"

    async def check(self, limit_class: str, client_identity: str) -> RateLimitResult:
        """Count one request and decide whether it is allowed.

        Args:
            limit_class: Endpoint category, e.g. "createPoll"
            client_identity: "user:<id>" or "ip:<address>"

        Returns:
            RateLimitResult for this request
        """
        rule = self.rule_for(limit_class)
        key = self.bucket_key(limit_class, client_identity)

        if self._random() < self._sweep_probability:
            removed = await self.sweep()
            if removed:
                logger.debug(f"Rate limit sweep removed {removed} expired buckets")

        async with self._locks(key):
            now = self._clock()
            bucket = await self._store.get(key)

            if bucket is None or now > bucket["window_reset_at"]:
                reset_at = now + rule.window_seconds
                await self._store.set(
                    key, {"count": 1, "window_reset_at": reset_at}, ttl=rule.window_seconds
                )
                return RateLimitResult(
                    allowed=True,
                    limit=rule.max_requests,
                    remaining=rule.max_requests - 1,
                    reset_time=reset_at,
                )

            reset_at = bucket["window_reset_at"]
            if bucket["count"] >= rule.max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=rule.max_requests,
                    remaining=0,
                    reset_time=reset_at,
                    retry_after=max(1, math.ceil(reset_at - now)),
                )

            bucket["count"] += 1
            await self._store.set(key, bucket, ttl=max(reset_at - now, 1))
            return RateLimitResult(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests - bucket["count"],
                reset_time=reset_at,
            )

    async def sweep(self) -> int:
        """Delete buckets whose window has already ended."""
        now = self._clock()
        return await self._store.sweep(lambda bucket: now > bucket["window_reset_at"])


_CREATE_POLL_PATH = re.compile(r"^/api/polls/?$")
_VOTE_PATH = re.compile(r"^/api/polls/[^/]+/vote/?$")


def classify_request(method: str, path: str) -> Optional[str]:
    """Map a request to its limit class.

    Returns:
        The limit class name, or None for paths that are not rate limited.
    """
    if not path.startswith("/api/") and path != "/api":
        return None
    if path.startswith("/api/auth/"):
        return AUTH_CLASS
    if method == "POST" and _CREATE_POLL_PATH.match(path):
        return CREATE_POLL_CLASS
    if method == "POST" and _VOTE_PATH.match(path):
        return VOTE_CLASS
    return DEFAULT_CLASS


def resolve_client_identity(request: Request, user_id: Optional[str] = None) -> str:
    """Derive the rate limit client identity for a request.

    Precedence: authenticated user id, first X-Forwarded-For address,
    X-Real-IP, then the literal "unknown".
    """
    if user_id:
        return f"user:{user_id}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return f"ip:{first}"

    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return f"ip:{real_ip}"

    return "ip:unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce per-class rate limits on API requests.

    Limits are applied per authenticated user if one can be resolved,
    otherwise per client IP. Any fault inside the limiter lets the request
    through.
    """

    def __init__(
        self,
        app,
        limiter: FixedWindowRateLimiter,
        resolver=None,
        classify: Callable[[str, str], Optional[str]] = classify_request,
        enabled: bool = True,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.resolver = resolver
        self.classify = classify
        self.enabled = enabled

    async def _user_id(self, request: Request) -> Optional[str]:
        if self.resolver is None:
            return None
        try:
            user = await self.resolver.resolve(request)
        except Exception as e:
            # Rate limiting never depends on the backend being up.
            logger.debug(f"Identity lookup failed during rate limiting: {e}")
            return None
        return user.id if user else None

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self.enabled:
            return await call_next(request)

        limit_class = self.classify(request.method, request.url.path)
        if limit_class is None:
            return await call_next(request)

        try:
            client_id = resolve_client_identity(request, await self._user_id(request))
            result = await self.limiter.check(limit_class, client_id)
        except Exception as e:
            logger.error(
                f"Rate limiter failed, allowing request: {e}",
                extra=get_log_context(limit_class=limit_class),
            )
            return await call_next(request)

        if not result.allowed:
            error = RateLimitExceededError(result.retry_after or 1, limit_class)
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    client_id=client_id,
                    limit_class=limit_class,
                    retry_after=result.retry_after,
                ),
            )
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=result.headers(),
            )

        response = await call_next(request)
        response.headers.update(result.headers())
        return response
