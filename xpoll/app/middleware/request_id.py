"""Request ID middleware for request correlation.

Every response carries an ``X-Request-ID`` header, and the same value is
attached to every log line written while the request is handled.
"""

import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from xpoll.app.core.context import set_current_request_id
from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.exceptions import internal_error_body

logger = get_logger(__name__)

MAX_REQUEST_ID_LENGTH = 128


def _is_usable_request_id(value: str | None) -> bool:
    if not value or len(value) > MAX_REQUEST_ID_LENGTH:
        return False
    return value.isprintable() and not any(ch.isspace() for ch in value)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log its outcome.

    A caller-supplied id is reused when it is short, printable and has no
    whitespace; otherwise a UUID4 is generated. The id is stored on
    ``request.state``, in the logging context and on the response.

    Unhandled exceptions from inner layers are turned into a 500 INTERNAL
    response here, so the error response carries the id as well.
    """

    def __init__(self, app, header_name: str = "X-Request-ID", debug: bool = False):
        super().__init__(app)
        self.header_name = header_name
        self.debug = debug

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(self.header_name)
        request_id = incoming if _is_usable_request_id(incoming) else str(uuid.uuid4())

        request.state.request_id = request_id
        set_current_request_id(request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                f"Unhandled exception [request_id={request_id}]",
                extra=get_log_context(
                    request_id=request_id,
                    path=request.url.path,
                    method=request.method,
                    exception_type=type(exc).__name__,
                ),
            )
            response = JSONResponse(
                status_code=500, content=internal_error_body(request_id, exc, self.debug)
            )
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        response.headers[self.header_name] = request_id
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra=get_log_context(
                request_id=request_id,
                path=request.url.path,
                method=request.method,
                status_code=response.status_code,
                duration_ms=elapsed_ms,
            ),
        )
        return response


def get_request_id(request: Request) -> str:
    """Return the id assigned by ``RequestIdMiddleware``, or ``"unknown"``."""
    return getattr(request.state, "request_id", "unknown")
