"""Tests for the browser hardening headers."""

import pytest
from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient

from xpoll.app.middleware.security_headers import (
    SecurityHeadersConfig,
    SecurityHeadersMiddleware,
    build_csp,
    get_default_security_headers,
)


class TestHeaderBuilders:

    def test_csp_uses_nonce_and_backend_origin(self):
        csp = build_csp("abc", "https://project.supabase.test")
        assert "script-src 'self' 'nonce-abc' 'strict-dynamic'" in csp
        assert "style-src 'self' 'nonce-abc' https://fonts.googleapis.com" in csp
        assert "connect-src 'self' https://project.supabase.test" in csp
        assert "frame-ancestors 'none'" in csp

    def test_default_headers(self):
        headers = get_default_security_headers("abc", SecurityHeadersConfig(hsts_max_age=600))
        assert headers["Strict-Transport-Security"] == "max-age=600; includeSubDomains; preload"
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["X-Nonce"] == "abc"
        assert "camera=()" in headers["Permissions-Policy"]
        assert headers["Cross-Origin-Opener-Policy"] == "same-origin"

    def test_extra_headers_override(self):
        config = SecurityHeadersConfig(extra_headers={"X-Frame-Options": "SAMEORIGIN"})
        assert get_default_security_headers("n", config)["X-Frame-Options"] == "SAMEORIGIN"


class TestSecurityHeadersMiddleware:

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware)

        @app.get("/api/polls")
        async def polls(request: Request):
            return {"nonce": request.state.csp_nonce}

        @app.get("/health")
        async def health():
            return Response("ok", headers={"Server": "uvicorn", "X-Powered-By": "python"})

        return TestClient(app)

    def test_nonce_is_fresh_per_request(self, client):
        first = client.get("/api/polls")
        second = client.get("/api/polls")

        nonce = first.json()["nonce"]
        assert first.headers["X-Nonce"] == nonce
        assert f"'nonce-{nonce}'" in first.headers["Content-Security-Policy"]
        assert second.headers["X-Nonce"] != nonce

    def test_poll_paths_are_not_cached(self, client):
        response = client.get("/api/polls")
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["Pragma"] == "no-cache"
        assert response.headers["Expires"] == "0"

    def test_other_paths_keep_cache_headers(self, client):
        response = client.get("/health")
        assert "Cache-Control" not in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "Strict-Transport-Security" in response.headers

    def test_server_identification_removed(self, client):
        response = client.get("/health")
        assert "X-Powered-By" not in response.headers
        assert "Server" not in response.headers
