"""Shared fixtures for the poll service tests."""

from typing import Optional

import pytest
from fastapi import Request

from xpoll.app.core.store import InMemoryStore
from xpoll.app.exceptions import AuthenticationRequiredError
from xpoll.app.middleware.csrf import CSRFGuard
from xpoll.app.middleware.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitRule,
    build_default_rules,
)
from xpoll.app.middleware.session import SessionConfig, SessionGuard
from xpoll.app.services.supabase import AuthenticatedUser

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResolver:
    """Identity resolver backed by a token -> user map instead of the backend."""

    def __init__(self, users: Optional[dict[str, AuthenticatedUser]] = None):
        self.users = dict(users or {})
        self.revoked: list[str] = []
        self.calls = 0
        self.fail_with: Optional[Exception] = None

    def add(self, user: AuthenticatedUser) -> AuthenticatedUser:
        self.users[user.access_token] = user
        return user

    async def resolve(self, request: Request) -> Optional[AuthenticatedUser]:
        if getattr(request.state, "identity_resolved", False):
            return request.state.user
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else request.cookies.get("sb-access-token")
        user = self.users.get(token) if token else None
        request.state.user = user
        request.state.identity_resolved = True
        return user

    async def require(self, request: Request) -> AuthenticatedUser:
        user = await self.resolve(request)
        if user is None:
            raise AuthenticationRequiredError()
        return user

    async def revoke(self, user: AuthenticatedUser) -> None:
        self.revoked.append(user.id)
        self.users.pop(user.access_token, None)


def make_user(user_id: str = "user-a", expires_at: Optional[float] = None) -> AuthenticatedUser:
    return AuthenticatedUser(
        id=user_id,
        email=f"{user_id}@example.com",
        access_token=f"token-{user_id}",
        expires_at=expires_at if expires_at is not None else T0 + 3600,
    )


def auth_headers(user: AuthenticatedUser, **extra: str) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {user.access_token}"}
    headers.update(extra)
    return headers


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def user_a(resolver):
    return resolver.add(make_user("user-a"))


@pytest.fixture
def user_b(resolver):
    return resolver.add(make_user("user-b"))


@pytest.fixture
def rate_limiter(clock):
    return FixedWindowRateLimiter(
        build_default_rules(), store=InMemoryStore(clock=clock), clock=clock, sweep_probability=0.0
    )


@pytest.fixture
def csrf_guard(clock):
    return CSRFGuard(store=InMemoryStore(clock=clock), clock=clock)


@pytest.fixture
def session_guard(clock, resolver):
    return SessionGuard(
        store=InMemoryStore(clock=clock), config=SessionConfig(), resolver=resolver, clock=clock
    )


@pytest.fixture
def small_rules():
    return {
        "default": RateLimitRule(max_requests=3, window_seconds=60),
        "createPoll": RateLimitRule(max_requests=2, window_seconds=3600),
    }
