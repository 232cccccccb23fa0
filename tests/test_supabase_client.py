"""Tests for the hosted backend client."""

import base64
import json

import httpx
import pytest
import respx
from httpx import Response

from xpoll.app.exceptions import (
    AuthenticationRequiredError,
    NotFoundError,
    UpstreamServiceError,
    ValidationError,
)
from xpoll.app.services.supabase import SupabaseClient, decode_token_expiry

BASE = "https://project.supabase.test"


def make_jwt(claims: dict) -> str:
    def part(data: dict) -> str:
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")
    return f"{part({'alg': 'HS256'})}.{part(claims)}.signature"


def client() -> SupabaseClient:
    return SupabaseClient(httpx.AsyncClient(), base_url=BASE + "/", anon_key="anon")


class TestDecodeTokenExpiry:

    def test_reads_exp_claim(self):
        assert decode_token_expiry(make_jwt({"sub": "u", "exp": 1_700_003_600})) == 1_700_003_600.0

    @pytest.mark.parametrize("token", ["opaque", "a.b", "a.!!!.c", make_jwt({"sub": "u"})])
    def test_unreadable_tokens(self, token):
        assert decode_token_expiry(token) is None


class TestAuth:

    @pytest.mark.asyncio
    @respx.mock
    async def test_get_user_sends_token_and_apikey(self):
        token = make_jwt({"exp": 2_000_000_000})
        route = respx.get(f"{BASE}/auth/v1/user").mock(
            return_value=Response(200, json={"id": "u1", "email": "a@example.com"})
        )

        user = await client().get_user(token)

        assert user.id == "u1"
        assert user.email == "a@example.com"
        assert user.expires_at == 2_000_000_000.0
        request = route.calls.last.request
        assert request.headers["apikey"] == "anon"
        assert request.headers["Authorization"] == f"Bearer {token}"

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_token(self):
        respx.get(f"{BASE}/auth/v1/user").mock(
            return_value=Response(401, json={"msg": "invalid JWT"})
        )
        with pytest.raises(AuthenticationRequiredError) as exc_info:
            await client().get_user("bad")
        assert exc_info.value.message == "invalid JWT"

    @pytest.mark.asyncio
    @respx.mock
    async def test_sign_in(self):
        route = respx.post(f"{BASE}/auth/v1/token").mock(
            return_value=Response(200, json={
                "access_token": "at",
                "refresh_token": "rt",
                "expires_at": 1_700_003_600,
                "user": {"id": "u1", "email": "a@example.com"},
            })
        )

        session = await client().sign_in("a@example.com", "secret1")

        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert session.expires_at == 1_700_003_600.0
        assert session.user.id == "u1"
        request = route.calls.last.request
        assert request.url.params["grant_type"] == "password"
        assert json.loads(request.content) == {"email": "a@example.com", "password": "secret1"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_sign_in_bad_credentials(self):
        respx.post(f"{BASE}/auth/v1/token").mock(
            return_value=Response(400, json={"error_description": "Invalid login credentials"})
        )
        with pytest.raises(ValidationError) as exc_info:
            await client().sign_in("a@example.com", "wrong!")
        assert exc_info.value.message == "Invalid login credentials"

    @pytest.mark.asyncio
    @respx.mock
    async def test_sign_up_pending_confirmation(self):
        respx.post(f"{BASE}/auth/v1/signup").mock(
            return_value=Response(200, json={"id": "u1", "email": "a@example.com"})
        )
        assert await client().sign_up("a@example.com", "secret1") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_falls_back_to_token_expiry(self):
        token = make_jwt({"exp": 1_800_000_000})
        route = respx.post(f"{BASE}/auth/v1/token").mock(
            return_value=Response(200, json={
                "access_token": token,
                "refresh_token": "rt2",
                "user": {"id": "u1"},
            })
        )

        session = await client().refresh("rt")

        assert session.expires_at == 1_800_000_000.0
        assert route.calls.last.request.url.params["grant_type"] == "refresh_token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_incomplete_session(self):
        respx.post(f"{BASE}/auth/v1/token").mock(return_value=Response(200, json={}))
        with pytest.raises(UpstreamServiceError):
            await client().refresh("rt")

    @pytest.mark.asyncio
    @respx.mock
    async def test_sign_out(self):
        route = respx.post(f"{BASE}/auth/v1/logout").mock(return_value=Response(204))
        await client().sign_out("at")
        assert route.calls.last.request.headers["Authorization"] == "Bearer at"


class TestData:

    @pytest.mark.asyncio
    @respx.mock
    async def test_select_builds_postgrest_query(self):
        route = respx.get(f"{BASE}/rest/v1/polls").mock(
            return_value=Response(200, json=[{"id": "p1"}])
        )

        rows = await client().select(
            "polls", "at", columns="id,title", filters={"is_active": "eq.true"}, order="created_at.desc"
        )

        assert rows == [{"id": "p1"}]
        params = route.calls.last.request.url.params
        assert params["select"] == "id,title"
        assert params["is_active"] == "eq.true"
        assert params["order"] == "created_at.desc"

    @pytest.mark.asyncio
    @respx.mock
    async def test_insert_requests_representation(self):
        route = respx.post(f"{BASE}/rest/v1/votes").mock(
            return_value=Response(201, json=[{"id": "v1"}])
        )
        rows = await client().insert("votes", {"poll_id": "p1"}, "at")
        assert rows == [{"id": "v1"}]
        assert route.calls.last.request.headers["Prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_delete_requires_filters(self):
        with pytest.raises(ValueError):
            await client().delete("polls", {}, "at")

    @pytest.mark.asyncio
    @respx.mock
    async def test_rpc(self):
        route = respx.post(f"{BASE}/rest/v1/rpc/get_poll_results").mock(
            return_value=Response(200, json=[{"option_id": "o1", "vote_count": 2}])
        )
        result = await client().rpc("get_poll_results", {"poll_id": "p1"}, "at")
        assert result[0]["vote_count"] == 2
        assert json.loads(route.calls.last.request.content) == {"poll_id": "p1"}

    @pytest.mark.asyncio
    @respx.mock
    @pytest.mark.parametrize(
        ("status", "error"),
        [(404, NotFoundError), (403, AuthenticationRequiredError), (503, UpstreamServiceError)],
    )
    async def test_error_mapping(self, status, error):
        respx.get(f"{BASE}/rest/v1/polls").mock(return_value=Response(status, json={}))
        with pytest.raises(error):
            await client().select("polls", "at")

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self):
        respx.get(f"{BASE}/rest/v1/polls").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(UpstreamServiceError):
            await client().select("polls", "at")

    @pytest.mark.asyncio
    @respx.mock
    async def test_ping(self):
        respx.get(f"{BASE}/auth/v1/health").mock(
            side_effect=[Response(200, json={}), Response(500)]
        )
        assert await client().ping() is True
        assert await client().ping() is False
