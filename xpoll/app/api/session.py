"""Session status endpoints used by the client-side session monitor."""

from typing import Any

from fastapi import APIRouter, Request

from xpoll.app.api.dependencies import CurrentUser, Resolver, SessionGuardDep

router = APIRouter(prefix="/api/session", tags=["session"])


@router.get("/status")
async def session_status(
    request: Request,
    resolver: Resolver,
    guard: SessionGuardDep,
) -> dict[str, Any]:
    """Report the session state without counting as activity.

    ``warn`` is true while the session is inside the warning window. This
    is a read-only view, independent of the one-shot warning flag.
    """
    user = await resolver.resolve(request)
    if user is None:
        return {
            "valid": False,
            "reason": "no_session",
            "should_refresh": False,
            "warn": False,
            "seconds_until_timeout": 0,
        }

    check = await guard.should_terminate(user.id)
    if check.terminate:
        return {
            "valid": False,
            "reason": check.reason,
            "should_refresh": False,
            "warn": False,
            "seconds_until_timeout": 0,
        }

    return {
        "valid": True,
        "reason": None,
        "should_refresh": guard.needs_refresh(user.expires_at),
        "warn": await guard.in_warning_window(user.id),
        "seconds_until_timeout": int(await guard.seconds_until_timeout(user.id)),
    }


@router.post("/activity")
async def record_activity(user: CurrentUser, guard: SessionGuardDep) -> dict[str, Any]:
    """Explicit keep-alive, e.g. when the user chooses to extend the session."""
    await guard.record_activity(user.id)
    return {
        "success": True,
        "seconds_until_timeout": int(await guard.seconds_until_timeout(user.id)),
    }
