from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from xpoll.app.api import auth_router, csrf_router, polls_router, session_router
from xpoll.app.core.config import Settings, settings
from xpoll.app.core.http_client import init_http_client
from xpoll.app.core.logging import get_logger, setup_logging
from xpoll.app.core.store import RedisStore, get_store
from xpoll.app.core.sweeper import PeriodicSweeper
from xpoll.app.exceptions import (
    RateLimitExceededError,
    ValidationError,
    XPollException,
    internal_error_body,
)
from xpoll.app.middleware.csrf import CSRFGuard, CSRFProtectionMiddleware
from xpoll.app.middleware.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitMiddleware,
    build_default_rules,
)
from xpoll.app.middleware.request_id import RequestIdMiddleware
from xpoll.app.middleware.security_headers import SecurityHeadersConfig, SecurityHeadersMiddleware
from xpoll.app.middleware.session import SessionConfig, SessionGuard, SessionMiddleware
from xpoll.app.services.identity import IdentityResolver
from xpoll.app.services.polls import PollService
from xpoll.app.services.supabase import SupabaseClient

# No token can exist before sign-in or sign-up. Refresh runs from the
# refresh-token cookie alone and does not change server-side state here.
CSRF_EXEMPT_PATHS = ("/api/auth/signin", "/api/auth/signup", "/api/auth/refresh")


def create_app(
    config: Settings = settings,
    *,
    supabase: Optional[SupabaseClient] = None,
    resolver: Optional[IdentityResolver] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    csrf_guard: Optional[CSRFGuard] = None,
    session_guard: Optional[SessionGuard] = None,
    poll_service: Optional[PollService] = None,
    start_sweepers: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator can be injected; anything not given is built from
    ``config``.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    supabase = supabase or SupabaseClient(
        base_url=config.supabase_url, anon_key=config.supabase_anon_key
    )
    resolver = resolver or IdentityResolver(supabase)
    rate_limiter = rate_limiter or FixedWindowRateLimiter(
        build_default_rules(config),
        store=get_store("ratelimit"),
        sweep_probability=config.rate_limit_sweep_probability,
    )
    csrf_guard = csrf_guard or CSRFGuard(
        store=get_store("csrf"),
        token_ttl_seconds=config.csrf_token_ttl_seconds,
        token_bytes=config.csrf_token_bytes,
    )
    session_guard = session_guard or SessionGuard(
        store=get_store("session"),
        config=SessionConfig.from_settings(config),
        resolver=resolver,
    )
    if session_guard.resolver is None:
        session_guard.resolver = resolver
    poll_service = poll_service or PollService(supabase)

    sweepers = [
        PeriodicSweeper("csrf", config.csrf_sweep_interval_seconds, csrf_guard.sweep),
        PeriodicSweeper("session", config.session_sweep_interval_seconds, session_guard.sweep),
    ]

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Application lifespan context manager.

        Opens the shared HTTP client and starts the background sweeps on
        startup; stops them and closes store connections on shutdown.
        """
        async with init_http_client() as http_client:
            if start_sweepers:
                for sweeper in sweepers:
                    await sweeper.start()

            logger.info(
                "Application startup complete",
                extra={
                    "environment": config.environment,
                    "redis_enabled": config.redis_enabled,
                    "debug_mode": config.debug,
                },
            )

            yield {"http_client": http_client}

            for sweeper in sweepers:
                await sweeper.stop()

        for store in (rate_limiter.store, csrf_guard.store, session_guard.store):
            if isinstance(store, RedisStore):
                await store.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="xpoll",
        description="Polling API with rate limiting, CSRF protection and session tracking",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.supabase = supabase
    app.state.identity_resolver = resolver
    app.state.rate_limiter = rate_limiter
    app.state.csrf_guard = csrf_guard
    app.state.session_guard = session_guard
    app.state.poll_service = poll_service
    app.state.sweepers = sweepers

    # Add middleware (order matters: last added = first executed).
    # CSRF sits outside the session check so a rejected forgery never
    # counts as activity.
    app.add_middleware(SessionMiddleware, guard=session_guard)
    app.add_middleware(
        CSRFProtectionMiddleware,
        guard=csrf_guard,
        resolver=resolver,
        exempt_paths=CSRF_EXEMPT_PATHS,
    )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=rate_limiter,
        resolver=resolver,
        enabled=config.rate_limit_enabled,
    )
    app.add_middleware(RequestIdMiddleware, debug=config.debug)
    if config.security_headers_enabled:
        app.add_middleware(
            SecurityHeadersMiddleware, config=SecurityHeadersConfig.from_settings(config)
        )
    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
            "X-Session-Valid",
            "X-Should-Refresh-Session",
            "X-Session-Warning",
            "X-CSRF-Protected",
            "X-Nonce",
        ],
        max_age=600,
    )

    app.include_router(auth_router)
    app.include_router(csrf_router)
    app.include_router(session_router)
    app.include_router(polls_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with state store status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            stores = {
                "ratelimit": rate_limiter.store,
                "csrf": csrf_guard.store,
                "session": session_guard.store,
            }
            for name, store in stores.items():
                if not await store.ping():
                    raise RuntimeError(f"{name} store did not answer")
            store_type = "redis" if isinstance(csrf_guard.store, RedisStore) else "memory"
            health_status["components"]["store"] = {"status": "ok", "type": store_type}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {
                "status": "error",
                "error": str(e)[:100],
            }

        return health_status

    @app.exception_handler(XPollException)
    async def xpoll_exception_handler(request: Request, exc: XPollException) -> JSONResponse:
        """Render service exceptions with their status code and error body."""
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code, content=exc.to_response(), headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return request body/parameter errors as 400 VALIDATION."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        message = str(first.get("msg", "Invalid request"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        error = ValidationError(message)
        body = error.to_response()
        body["details"] = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors
        ]
        return JSONResponse(status_code=error.status_code, content=body)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last resort for exceptions raised outside ``RequestIdMiddleware``.

        Route errors are already rendered by that middleware; this covers
        faults in the outer layers. Never sends a traceback to the client.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )
        return JSONResponse(
            status_code=500, content=internal_error_body(request_id, exc, config.debug)
        )

    return app


# Create the application instance
app = create_app()
