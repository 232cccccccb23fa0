"""FastAPI dependencies shared by the routers.

Guards and services are created in ``create_app()`` and kept on
``app.state`` so tests can swap them for fakes.
"""

from typing import Annotated

from fastapi import Depends, Request

from xpoll.app.middleware.csrf import CSRFGuard
from xpoll.app.middleware.session import SessionGuard
from xpoll.app.services.identity import IdentityResolver
from xpoll.app.services.polls import PollService
from xpoll.app.services.supabase import AuthenticatedUser, SupabaseClient


def get_resolver(request: Request) -> IdentityResolver:
    return request.app.state.identity_resolver


def get_supabase(request: Request) -> SupabaseClient:
    return request.app.state.supabase


def get_csrf_guard(request: Request) -> CSRFGuard:
    return request.app.state.csrf_guard


def get_session_guard(request: Request) -> SessionGuard:
    return request.app.state.session_guard


def get_poll_service(request: Request) -> PollService:
    return request.app.state.poll_service


async def get_current_user(
    request: Request,
    resolver: Annotated[IdentityResolver, Depends(get_resolver)],
) -> AuthenticatedUser:
    """Resolve the caller or raise AuthenticationRequiredError."""
    return await resolver.require(request)


Resolver = Annotated[IdentityResolver, Depends(get_resolver)]
Supabase = Annotated[SupabaseClient, Depends(get_supabase)]
CsrfGuardDep = Annotated[CSRFGuard, Depends(get_csrf_guard)]
SessionGuardDep = Annotated[SessionGuard, Depends(get_session_guard)]
PollServiceDep = Annotated[PollService, Depends(get_poll_service)]
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
