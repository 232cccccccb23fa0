"""CSRF token issuance endpoint."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from xpoll.app.api.dependencies import CsrfGuardDep, CurrentUser
from xpoll.app.middleware.csrf import set_csrf_cookie

router = APIRouter(prefix="/api", tags=["csrf"])

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/csrf-token")
async def issue_csrf_token(user: CurrentUser, guard: CsrfGuardDep) -> JSONResponse:
    """Issue a CSRF token for the authenticated user.

    The token is returned in the body and in an http-only cookie. Clients
    send it back in the X-CSRF-Token header on state-changing requests.
    """
    token = await guard.issue(user.id)
    response = JSONResponse(
        content={
            "success": True,
            "token": token,
            "message": "CSRF token generated successfully",
        },
        headers=NO_STORE_HEADERS,
    )
    set_csrf_cookie(response, token, max_age=int(guard.token_ttl_seconds))
    return response
