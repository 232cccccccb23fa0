"""Browser hardening headers added to every response.

Each request gets a fresh CSP nonce, exposed to handlers as
``request.state.csp_nonce`` and to the client as ``X-Nonce``.
"""

import base64
import secrets
from dataclasses import dataclass, field
from typing import Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from xpoll.app.core.config import Settings, settings

NONCE_BYTES = 16

PERMISSIONS_POLICY = ", ".join(
    f"{feature}=()"
    for feature in (
        "camera",
        "microphone",
        "geolocation",
        "interest-cohort",
        "payment",
        "usb",
        "bluetooth",
        "magnetometer",
        "gyroscope",
        "accelerometer",
        "ambient-light-sensor",
    )
)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass(frozen=True)
class SecurityHeadersConfig:
    """What the middleware adds.

    ``connect_src`` is the extra origin the browser may call (the hosted
    backend). Paths containing one of ``no_store_markers`` are never cached.
    """
    connect_src: str = "https://*.supabase.co"
    hsts_max_age: int = 31536000
    no_store_markers: tuple[str, ...] = ("/auth", "/polls")
    remove_headers: tuple[str, ...] = ("Server", "X-Powered-By")
    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "SecurityHeadersConfig":
        return cls(
            connect_src=config.supabase_url or cls.connect_src,
            hsts_max_age=config.hsts_max_age_seconds,
        )


def generate_nonce() -> str:
    return base64.b64encode(secrets.token_bytes(NONCE_BYTES)).decode("ascii")


def build_csp(nonce: str, connect_src: str) -> str:
    directives = [
        "default-src 'self'",
        f"script-src 'self' 'nonce-{nonce}' 'strict-dynamic'",
        f"style-src 'self' 'nonce-{nonce}' https://fonts.googleapis.com",
        "img-src 'self' data: blob: https:",
        "font-src 'self' data: https://fonts.gstatic.com",
        f"connect-src 'self' {connect_src}",
        "frame-src 'none'",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
        "upgrade-insecure-requests",
    ]
    return "; ".join(directives)


def get_default_security_headers(
    nonce: str, config: Optional[SecurityHeadersConfig] = None
) -> dict[str, str]:
    """Headers sent on every response, given the request's nonce."""
    config = config or SecurityHeadersConfig()
    headers = {
        "Content-Security-Policy": build_csp(nonce, config.connect_src),
        "X-Nonce": nonce,
        "X-XSS-Protection": "1; mode=block",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": PERMISSIONS_POLICY,
        "Strict-Transport-Security": f"max-age={config.hsts_max_age}; includeSubDomains; preload",
        "Cross-Origin-Embedder-Policy": "require-corp",
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
    }
    headers.update(config.extra_headers)
    return headers


def is_no_store_path(path: str, markers: Iterable[str]) -> bool:
    return any(marker in path for marker in markers)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds CSP, HSTS, framing, sniffing and cross-origin headers.

    Responses for auth and poll paths additionally get no-store cache
    headers. Headers already set by a handler are overwritten.
    """

    def __init__(self, app, config: Optional[SecurityHeadersConfig] = None):
        super().__init__(app)
        self.config = config or SecurityHeadersConfig()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        nonce = generate_nonce()
        request.state.csp_nonce = nonce

        response = await call_next(request)

        response.headers.update(get_default_security_headers(nonce, self.config))
        if is_no_store_path(request.url.path, self.config.no_store_markers):
            response.headers.update(NO_STORE_HEADERS)
        for name in self.config.remove_headers:
            if name in response.headers:
                del response.headers[name]
        return response
