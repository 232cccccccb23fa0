"""Tests for request identity lookup."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.requests import Request

from tests.conftest import make_user
from xpoll.app.exceptions import AuthenticationRequiredError, UpstreamServiceError
from xpoll.app.services.identity import (
    IdentityResolver,
    extract_access_token,
    forget_identity,
)


def _request(headers: dict[str, str]) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/api/polls",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "state": {},
    })


@pytest.fixture
def backend():
    client = MagicMock()
    client.get_user = AsyncMock(return_value=make_user("u1"))
    client.sign_out = AsyncMock()
    return client


class TestExtractAccessToken:

    def test_bearer_header(self):
        assert extract_access_token(_request({"Authorization": "Bearer abc"})) == "abc"

    def test_cookie_fallback(self):
        assert extract_access_token(_request({"Cookie": "sb-access-token=xyz"})) == "xyz"

    def test_no_credential(self):
        assert extract_access_token(_request({"Authorization": "Basic abc"})) is None


class TestIdentityResolver:

    @pytest.mark.asyncio
    async def test_resolves_once_per_request(self, backend):
        resolver = IdentityResolver(backend)
        request = _request({"Authorization": "Bearer token-u1"})

        first = await resolver.resolve(request)
        second = await resolver.resolve(request)

        assert first is second
        assert first.id == "u1"
        backend.get_user.assert_awaited_once_with("token-u1")

    @pytest.mark.asyncio
    async def test_anonymous_without_token(self, backend):
        assert await IdentityResolver(backend).resolve(_request({})) is None
        backend.get_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_token_is_anonymous(self, backend):
        backend.get_user.side_effect = AuthenticationRequiredError()
        resolver = IdentityResolver(backend)
        assert await resolver.resolve(_request({"Authorization": "Bearer bad"})) is None
        with pytest.raises(AuthenticationRequiredError):
            await resolver.require(_request({"Authorization": "Bearer bad"}))

    @pytest.mark.asyncio
    async def test_backend_outage_propagates(self, backend):
        backend.get_user.side_effect = UpstreamServiceError()
        with pytest.raises(UpstreamServiceError):
            await IdentityResolver(backend).resolve(_request({"Authorization": "Bearer t"}))

    @pytest.mark.asyncio
    async def test_revoke_tolerates_invalid_credential(self, backend):
        backend.sign_out.side_effect = AuthenticationRequiredError()
        await IdentityResolver(backend).revoke(make_user("u1"))
        backend.sign_out.assert_awaited_once_with("token-u1")

    @pytest.mark.asyncio
    async def test_forget_identity(self, backend):
        resolver = IdentityResolver(backend)
        request = _request({"Authorization": "Bearer token-u1"})
        await resolver.resolve(request)

        forget_identity(request)

        assert await resolver.resolve(request) is None
