"""End-to-end tests of the assembled application with a fake backend."""

from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from tests.conftest import FakeClock, FakeResolver, auth_headers, make_user
from xpoll.app.core.store import InMemoryStore
from xpoll.app.exceptions import NotFoundError
from xpoll.app.main import create_app
from xpoll.app.middleware.csrf import CSRFGuard
from xpoll.app.middleware.rate_limit import FixedWindowRateLimiter, RateLimitRule
from xpoll.app.middleware.session import SessionGuard
from xpoll.app.services.polls import PollService
from xpoll.app.services.supabase import AuthSession, SupabaseClient

CREDENTIALS = {"email": "user-a@example.com", "password": "secret1"}


def build_env(rules=None) -> SimpleNamespace:
    clock = FakeClock()
    resolver = FakeResolver()
    supabase = MagicMock(spec=SupabaseClient)
    polls = MagicMock(spec=PollService)
    rate_limiter = FixedWindowRateLimiter(
        rules or {"default": RateLimitRule(100, 900)},
        store=InMemoryStore(clock=clock),
        clock=clock,
        sweep_probability=0,
    )
    csrf_guard = CSRFGuard(store=InMemoryStore(clock=clock), clock=clock)
    session_guard = SessionGuard(store=InMemoryStore(clock=clock), resolver=resolver, clock=clock)
    app = create_app(
        supabase=supabase,
        resolver=resolver,
        rate_limiter=rate_limiter,
        csrf_guard=csrf_guard,
        session_guard=session_guard,
        poll_service=polls,
        start_sweepers=False,
    )
    return SimpleNamespace(
        app=app,
        client=TestClient(app, raise_server_exceptions=False),
        clock=clock,
        resolver=resolver,
        supabase=supabase,
        polls=polls,
        csrf_guard=csrf_guard,
        session_guard=session_guard,
    )


def sign_in(env, user) -> str:
    """Sign ``user`` in through the API and return a fresh CSRF token."""
    env.resolver.add(user)
    env.supabase.sign_in.return_value = AuthSession(
        access_token=user.access_token,
        refresh_token="refresh-" + user.id,
        expires_at=user.expires_at,
        user=user,
    )
    response = env.client.post("/api/auth/signin", json=CREDENTIALS)
    assert response.status_code == 200
    response = env.client.get("/api/csrf-token", headers=auth_headers(user))
    assert response.status_code == 200
    env.client.cookies.clear()
    return response.json()["token"]


@pytest.fixture
def env():
    return build_env()


@pytest.fixture
def user():
    return make_user("user-a")


class TestAuthEndpoints:

    def test_sign_in_starts_session_and_sets_cookies(self, env, user):
        env.resolver.add(user)
        env.supabase.sign_in.return_value = AuthSession(
            access_token=user.access_token, refresh_token="rt", expires_at=None, user=user
        )

        response = env.client.post("/api/auth/signin", json=CREDENTIALS)

        assert response.status_code == 200
        body = response.json()
        assert body["user"] == {"id": "user-a", "email": "user-a@example.com"}
        assert body["access_token"] == user.access_token
        cookies = " ".join(response.headers.get_list("set-cookie"))
        assert "sb-access-token=" in cookies
        assert "sb-refresh-token=rt" in cookies
        assert "HttpOnly" in cookies
        env.supabase.sign_in.assert_awaited_once_with("user-a@example.com", "secret1")

        status = env.client.get("/api/session/status", headers=auth_headers(user)).json()
        assert status["valid"] is True
        assert status["seconds_until_timeout"] == 7200

    def test_sign_in_is_rate_limited_under_auth_class(self, user):
        env = build_env({"default": RateLimitRule(100, 900), "auth": RateLimitRule(1, 900)})
        env.supabase.sign_in.return_value = AuthSession(
            access_token=user.access_token, refresh_token=None, expires_at=None, user=user
        )
        assert env.client.post("/api/auth/signin", json=CREDENTIALS).status_code == 200

        response = env.client.post("/api/auth/signin", json=CREDENTIALS)
        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMIT"

    def test_sign_in_rejects_malformed_credentials(self, env):
        response = env.client.post("/api/auth/signin", json={"email": "nope", "password": "x"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION"

    def test_sign_up_pending_confirmation(self, env):
        env.supabase.sign_up.return_value = None
        response = env.client.post("/api/auth/signup", json=CREDENTIALS)
        assert response.status_code == 201
        assert response.json()["user"] is None

    def test_refresh_requires_token(self, env):
        response = env.client.post("/api/auth/refresh")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_REQUIRED"

    def test_sign_out_revokes_and_ends_session(self, env, user):
        token = sign_in(env, user)

        response = env.client.post(
            "/api/auth/signout", headers=auth_headers(user, **{"X-CSRF-Token": token})
        )

        assert response.status_code == 200
        assert env.resolver.revoked == ["user-a"]
        status = env.client.get("/api/session/status", headers=auth_headers(user)).json()
        assert status["valid"] is False

    def test_sign_out_requires_csrf_token(self, env, user):
        sign_in(env, user)

        response = env.client.post("/api/auth/signout", headers=auth_headers(user))

        assert response.status_code == 403
        assert response.json()["reason"] == "token_missing"
        assert env.resolver.revoked == []
        status = env.client.get("/api/session/status", headers=auth_headers(user)).json()
        assert status["valid"] is True


class TestCsrfTokenEndpoint:

    def test_requires_authentication(self, env):
        response = env.client.get("/api/csrf-token")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_REQUIRED"

    def test_issues_token_with_cookie_and_no_store(self, env, user):
        env.resolver.add(user)
        response = env.client.get("/api/csrf-token", headers=auth_headers(user))

        body = response.json()
        assert body["success"] is True
        assert body["message"] == "CSRF token generated successfully"
        assert len(body["token"]) == 64
        assert "no-store" in response.headers["Cache-Control"]
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"csrf-token={body['token']}")
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie


class TestPollFlow:

    def test_create_poll_with_token(self, env, user):
        token = sign_in(env, user)
        env.polls.create.return_value = {"id": "p1", "title": "Lunch?", "options": []}

        response = env.client.post(
            "/api/polls",
            json={"title": "Lunch?", "options": ["Pizza", "Sushi"]},
            headers=auth_headers(user, **{"X-CSRF-Token": token}),
        )

        assert response.status_code == 201
        assert response.json()["poll"]["id"] == "p1"
        assert response.headers["X-CSRF-Protected"] == "true"
        assert response.headers["X-Session-Valid"] == "true"
        assert "X-RateLimit-Limit" in response.headers
        assert "X-Request-ID" in response.headers
        assert "nonce-" in response.headers["Content-Security-Policy"]
        assert response.headers["Cache-Control"].startswith("no-store")
        created_by, data = env.polls.create.call_args.args
        assert created_by.id == "user-a"
        assert data.options == ["Pizza", "Sushi"]

    def test_create_poll_without_token(self, env, user):
        sign_in(env, user)
        response = env.client.post(
            "/api/polls",
            json={"title": "Lunch?", "options": ["Pizza", "Sushi"]},
            headers=auth_headers(user),
        )
        assert response.status_code == 403
        assert response.json()["reason"] == "token_missing"
        env.polls.create.assert_not_called()

    def test_csrf_is_checked_before_session(self, env, user):
        env.resolver.add(user)
        response = env.client.post("/api/polls", json={}, headers=auth_headers(user))
        assert response.status_code == 403
        assert response.json()["code"] == "CSRF_INVALID"

    def test_expired_session_with_valid_token_is_401(self, env, user):
        token = sign_in(env, user)
        env.clock.advance(2 * 60 * 60 + 1)

        response = env.client.post(
            "/api/polls",
            json={"title": "Lunch?", "options": ["Pizza", "Sushi"]},
            headers=auth_headers(user, **{"X-CSRF-Token": token}),
        )

        assert response.status_code == 401
        assert response.json()["reason"] == "inactivity"
        env.polls.create.assert_not_called()

    def test_invalid_poll_is_400(self, env, user):
        token = sign_in(env, user)
        response = env.client.post(
            "/api/polls",
            json={"title": "Lunch?", "options": ["Pizza", "Pizza"]},
            headers=auth_headers(user, **{"X-CSRF-Token": token}),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION"
        assert body["message"] == "Duplicate options are not allowed"
        assert body["details"]

    def test_create_poll_rate_limit(self, user):
        env = build_env({"default": RateLimitRule(100, 900), "createPoll": RateLimitRule(2, 3600)})
        token = sign_in(env, user)
        env.polls.create.return_value = {"id": "p1"}
        headers = auth_headers(user, **{"X-CSRF-Token": token})
        body = {"title": "Lunch?", "options": ["Pizza", "Sushi"]}

        for _ in range(2):
            assert env.client.post("/api/polls", json=body, headers=headers).status_code == 201

        response = env.client.post("/api/polls", json=body, headers=headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert env.polls.create.await_count == 2

    def test_vote(self, env, user):
        token = sign_in(env, user)
        env.polls.cast_vote.return_value = {"id": "v1"}
        poll_id, option_id = uuid4(), uuid4()

        response = env.client.post(
            f"/api/polls/{poll_id}/vote",
            json={"optionId": str(option_id)},
            headers=auth_headers(user, **{"X-CSRF-Token": token}),
        )

        assert response.status_code == 201
        assert response.json() == {"success": True, "vote": {"id": "v1"}}
        env.polls.cast_vote.assert_awaited_once()

    def test_list_and_results(self, env, user):
        sign_in(env, user)
        env.polls.list_for_user.return_value = [{"id": "p1"}]
        env.polls.get_with_results.return_value = {"id": "p1", "results": [], "total_votes": 0}

        listed = env.client.get("/api/polls?type=user", headers=auth_headers(user))
        assert listed.json() == {"polls": [{"id": "p1"}]}

        poll_id = uuid4()
        detail = env.client.get(f"/api/polls/{poll_id}?results=true", headers=auth_headers(user))
        assert detail.json()["poll"]["total_votes"] == 0

    def test_missing_poll_is_404(self, env, user):
        sign_in(env, user)
        env.polls.get.side_effect = NotFoundError("Poll")
        response = env.client.get(f"/api/polls/{uuid4()}", headers=auth_headers(user))
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_delete_needs_token(self, env, user):
        token = sign_in(env, user)
        url = f"/api/polls/{uuid4()}"
        assert env.client.delete(url, headers=auth_headers(user)).status_code == 403

        response = env.client.delete(url, headers=auth_headers(user, **{"X-CSRF-Token": token}))
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_idle_session_is_terminated(self, env, user):
        sign_in(env, user)
        env.clock.advance(2 * 60 * 60 + 1)

        response = env.client.get("/api/polls", headers=auth_headers(user))

        assert response.status_code == 401
        assert response.json()["reason"] == "inactivity"
        assert env.resolver.revoked == ["user-a"]

    def test_unhandled_error_is_500_without_details(self, env, user):
        sign_in(env, user)
        env.polls.list_public.side_effect = RuntimeError("database exploded")

        response = env.client.get("/api/polls", headers=auth_headers(user))

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "INTERNAL"
        assert "exploded" not in body["message"]
        assert "request_id" in body
        assert response.headers["X-Request-ID"] == body["request_id"]
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestSessionEndpoints:

    def test_status_without_session(self, env):
        body = env.client.get("/api/session/status").json()
        assert body["valid"] is False
        assert body["reason"] == "no_session"

    def test_status_does_not_count_as_activity(self, env, user):
        sign_in(env, user)
        env.clock.advance(116 * 60)

        first = env.client.get("/api/session/status", headers=auth_headers(user)).json()
        second = env.client.get("/api/session/status", headers=auth_headers(user)).json()

        assert first["warn"] is True
        assert second["warn"] is True
        assert second["seconds_until_timeout"] == 4 * 60

    def test_activity_extends_session(self, env, user):
        token = sign_in(env, user)
        env.clock.advance(116 * 60)

        response = env.client.post(
            "/api/session/activity", headers=auth_headers(user, **{"X-CSRF-Token": token})
        )

        assert response.status_code == 200
        assert response.json()["seconds_until_timeout"] == 7200
        assert response.headers["X-Session-Warning"] == "true"

    def test_rejected_forgery_is_not_activity(self, env, user):
        token = sign_in(env, user)
        env.clock.advance(116 * 60)

        forged = env.client.post("/api/session/activity", headers=auth_headers(user))

        assert forged.status_code == 403
        status = env.client.get("/api/session/status", headers=auth_headers(user)).json()
        assert status["seconds_until_timeout"] == 4 * 60

        # The one-shot warning is still there for the real request.
        response = env.client.post(
            "/api/session/activity", headers=auth_headers(user, **{"X-CSRF-Token": token})
        )
        assert response.headers["X-Session-Warning"] == "true"


class TestHealth:

    def test_health(self, env):
        response = env.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "components": {"store": {"status": "ok", "type": "memory"}},
        }
        assert "X-RateLimit-Limit" not in response.headers
