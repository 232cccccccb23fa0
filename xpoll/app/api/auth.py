"""Authentication endpoints proxied to the hosted auth service."""

import time
from typing import Any, Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field

from xpoll.app.api.dependencies import Resolver, SessionGuardDep, Supabase
from xpoll.app.core.config import settings
from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.exceptions import AuthenticationRequiredError
from xpoll.app.services.identity import forget_identity
from xpoll.app.services.supabase import AuthSession

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

DEFAULT_ACCESS_COOKIE_MAX_AGE = 60 * 60
REFRESH_COOKIE_MAX_AGE = 30 * 24 * 60 * 60


class Credentials(BaseModel):
    """Email and password for sign-in and sign-up."""
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=6, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


def _set_auth_cookies(response: Response, session: AuthSession) -> None:
    max_age = DEFAULT_ACCESS_COOKIE_MAX_AGE
    if session.expires_at is not None:
        max_age = max(0, int(session.expires_at - time.time()))
    response.set_cookie(
        key=settings.access_token_cookie_name,
        value=session.access_token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    if session.refresh_token:
        response.set_cookie(
            key=settings.refresh_token_cookie_name,
            value=session.refresh_token,
            max_age=REFRESH_COOKIE_MAX_AGE,
            path="/api/auth",
            httponly=True,
            secure=settings.is_production,
            samesite="strict",
        )


def _clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(settings.access_token_cookie_name, path="/")
    response.delete_cookie(settings.refresh_token_cookie_name, path="/api/auth")
    response.delete_cookie(settings.csrf_cookie_name, path="/")


def _session_body(session: AuthSession) -> dict[str, Any]:
    return {
        "user": {"id": session.user.id, "email": session.user.email},
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "expires_at": session.expires_at,
    }


@router.post("/signin")
async def sign_in(
    credentials: Credentials,
    response: Response,
    supabase: Supabase,
    session_guard: SessionGuardDep,
) -> dict[str, Any]:
    """Sign in with email and password and start a tracked session."""
    session = await supabase.sign_in(credentials.email, credentials.password)
    await session_guard.end_session(session.user.id)
    await session_guard.record_activity(session.user.id)
    _set_auth_cookies(response, session)
    logger.info("User signed in", extra=get_log_context(user_id=session.user.id))
    return _session_body(session)


@router.post("/signup", status_code=201)
async def sign_up(
    credentials: Credentials,
    response: Response,
    supabase: Supabase,
    session_guard: SessionGuardDep,
) -> dict[str, Any]:
    """Register a new account.

    When the backend requires email confirmation no session is returned
    and the user has to sign in afterwards.
    """
    session = await supabase.sign_up(credentials.email, credentials.password)
    if session is None:
        return {"user": None, "message": "Check your email to confirm your account"}

    await session_guard.record_activity(session.user.id)
    _set_auth_cookies(response, session)
    return _session_body(session)


@router.post("/refresh")
async def refresh(
    request: Request,
    response: Response,
    supabase: Supabase,
    body: Optional[RefreshRequest] = None,
) -> dict[str, Any]:
    """Exchange a refresh token for a new access token.

    Refreshing does not count as activity and does not extend the session.
    """
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(
        settings.refresh_token_cookie_name
    )
    if not refresh_token:
        raise AuthenticationRequiredError("Refresh token not provided")

    session = await supabase.refresh(refresh_token)
    _set_auth_cookies(response, session)
    return _session_body(session)


@router.post("/signout")
async def sign_out(
    request: Request,
    response: Response,
    resolver: Resolver,
    session_guard: SessionGuardDep,
) -> dict[str, Any]:
    """Revoke the credential, end the tracked session and clear cookies."""
    user = await resolver.resolve(request)
    if user is not None:
        await resolver.revoke(user)
        await session_guard.end_session(user.id)
        logger.info("User signed out", extra=get_log_context(user_id=user.id))
    forget_identity(request)
    _clear_auth_cookies(response)
    return {"success": True}
