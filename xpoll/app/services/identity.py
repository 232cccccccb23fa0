"""Current authenticated identity lookup.

The three guards and the route handlers all need to know who is calling.
The answer is looked up once per request and kept on ``request.state``.
"""

from typing import Optional

from fastapi import Request

from xpoll.app.core.config import settings
from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.exceptions import AuthenticationRequiredError
from xpoll.app.services.supabase import AuthenticatedUser, SupabaseClient

logger = get_logger(__name__)

_RESOLVED_ATTR = "identity_resolved"
_USER_ATTR = "user"


def extract_access_token(request: Request) -> Optional[str]:
    """Get the access token from the Authorization header or the cookie."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        if token:
            return token
    return request.cookies.get(settings.access_token_cookie_name) or None


class IdentityResolver:
    """Resolves the credential on a request to an AuthenticatedUser."""

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def resolve(self, request: Request) -> Optional[AuthenticatedUser]:
        """Return the caller's identity, or None for anonymous requests.

        An invalid or expired credential counts as anonymous. Backend
        outages raise UpstreamServiceError.
        """
        if getattr(request.state, _RESOLVED_ATTR, False):
            return getattr(request.state, _USER_ATTR, None)

        token = extract_access_token(request)
        user: Optional[AuthenticatedUser] = None
        if token:
            try:
                user = await self.client.get_user(token)
            except AuthenticationRequiredError:
                logger.debug("Presented credential was rejected by the backend")

        setattr(request.state, _USER_ATTR, user)
        setattr(request.state, _RESOLVED_ATTR, True)
        return user

    async def require(self, request: Request) -> AuthenticatedUser:
        """Like resolve(), but raise AuthenticationRequiredError for anonymous requests."""
        user = await self.resolve(request)
        if user is None:
            raise AuthenticationRequiredError()
        return user

    async def revoke(self, user: AuthenticatedUser) -> None:
        """Sign the user's credential out at the backend."""
        try:
            await self.client.sign_out(user.access_token)
        except AuthenticationRequiredError:
            # Already invalid at the backend.
            pass
        logger.info("Revoked credential", extra=get_log_context(user_id=user.id))


def forget_identity(request: Request) -> None:
    """Drop the cached identity, e.g. after sign-out."""
    setattr(request.state, _USER_ATTR, None)
    setattr(request.state, _RESOLVED_ATTR, True)
