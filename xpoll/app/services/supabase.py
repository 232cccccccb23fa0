"""HTTP client for the hosted auth and database service.

Only the small slice of the auth (GoTrue) and data (PostgREST) REST APIs
that the poll service needs. Data calls carry the end user's bearer token
so the backend's row-level security applies to every query.
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from xpoll.app.core.http_client import get_http_client
from xpoll.app.core.logging import get_logger
from xpoll.app.exceptions import (
    AuthenticationRequiredError,
    NotFoundError,
    UpstreamServiceError,
    ValidationError,
)

logger = get_logger(__name__)


def decode_token_expiry(access_token: str) -> Optional[float]:
    """Read the ``exp`` claim from a JWT without verifying it.

    The token is only trusted once the backend has accepted it; this just
    tells us when it will stop being accepted.
    """
    parts = access_token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return float(exp) if isinstance(exp, (int, float)) else None


@dataclass(frozen=True)
class AuthenticatedUser:
    """An identity the backend has confirmed for the current credential."""
    id: str
    email: Optional[str]
    access_token: str
    expires_at: Optional[float] = None


@dataclass(frozen=True)
class AuthSession:
    """Tokens returned by a sign-in or refresh."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[float]
    user: AuthenticatedUser


class SupabaseClient:
    """Thin async wrapper over the backend's auth and REST endpoints.

    Args:
        http_client: httpx.AsyncClient to use. Defaults to the shared client
            created in the application lifespan, looked up on each call.
        base_url: Project URL, e.g. https://abc.supabase.co
        anon_key: Public anon key sent as the ``apikey`` header
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = "",
        anon_key: str = "",
    ):
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key

    @property
    def _http(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    def _headers(self, access_token: Optional[str] = None, **extra: str) -> dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
        }
        headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(access_token, **(headers or {})),
            )
        except httpx.HTTPError as e:
            logger.error(f"Backend request failed: {method} {path}: {e}")
            raise UpstreamServiceError() from e

        if response.status_code >= 400:
            self._raise_for_status(response, method, path)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamServiceError("The backing service returned an invalid response.") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            for key in ("error_description", "msg", "message", "error"):
                if body.get(key):
                    return str(body[key])
        return response.reason_phrase

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        status = response.status_code
        message = self._error_message(response)
        if status >= 500:
            logger.error(f"Backend error {status}: {method} {path}: {message}")
            raise UpstreamServiceError()
        logger.debug(f"Backend rejected {method} {path} with {status}: {message}")
        if status in (401, 403):
            raise AuthenticationRequiredError(message)
        if status == 404:
            raise NotFoundError("Resource")
        raise ValidationError(message)

    def _parse_user(self, data: dict[str, Any], access_token: str) -> AuthenticatedUser:
        return AuthenticatedUser(
            id=data["id"],
            email=data.get("email"),
            access_token=access_token,
            expires_at=decode_token_expiry(access_token),
        )

    def _parse_session(self, data: dict[str, Any]) -> AuthSession:
        access_token = data.get("access_token")
        if not access_token or "user" not in data:
            raise UpstreamServiceError("The backing service returned an incomplete session.")
        expires_at = data.get("expires_at")
        user = self._parse_user(data["user"], access_token)
        if expires_at is None:
            expires_at = user.expires_at
        return AuthSession(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
            user=user,
        )

    # Auth

    async def get_user(self, access_token: str) -> AuthenticatedUser:
        """Resolve an access token to its user.

        Raises:
            AuthenticationRequiredError: If the token is invalid or expired.
        """
        data = await self._request("GET", "/auth/v1/user", access_token=access_token)
        return self._parse_user(data, access_token)

    async def sign_in(self, email: str, password: str) -> AuthSession:
        data = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json_body={"email": email, "password": password},
        )
        return self._parse_session(data)

    async def sign_up(self, email: str, password: str) -> Optional[AuthSession]:
        """Register a user. Returns None when email confirmation is pending."""
        data = await self._request(
            "POST",
            "/auth/v1/signup",
            json_body={"email": email, "password": password},
        )
        if data and data.get("access_token"):
            return self._parse_session(data)
        return None

    async def refresh(self, refresh_token: str) -> AuthSession:
        data = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json_body={"refresh_token": refresh_token},
        )
        return self._parse_session(data)

    async def sign_out(self, access_token: str) -> None:
        await self._request("POST", "/auth/v1/logout", access_token=access_token)

    # Data

    async def select(
        self,
        table: str,
        access_token: Optional[str] = None,
        columns: str = "*",
        filters: Optional[dict[str, str]] = None,
        order: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Select rows. ``filters`` use PostgREST syntax, e.g. {"id": "eq.<uuid>"}."""
        params: dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        return await self._request(
            "GET", f"/rest/v1/{table}", access_token=access_token, params=params
        ) or []

    async def insert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        access_token: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        return await self._request(
            "POST",
            f"/rest/v1/{table}",
            access_token=access_token,
            json_body=rows,
            headers={"Prefer": "return=representation"},
        ) or []

    async def delete(
        self,
        table: str,
        filters: dict[str, str],
        access_token: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        return await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            access_token=access_token,
            params=filters,
            headers={"Prefer": "return=representation"},
        ) or []

    async def rpc(
        self,
        function: str,
        args: dict[str, Any],
        access_token: Optional[str] = None,
    ) -> Any:
        return await self._request(
            "POST", f"/rest/v1/rpc/{function}", access_token=access_token, json_body=args
        )

    async def ping(self) -> bool:
        """Check the auth service answers its health endpoint."""
        try:
            await self._request("GET", "/auth/v1/health")
        except Exception:
            return False
        return True
