"""Session inactivity and duration tracking.

The hosted backend issues and verifies credentials; this module decides
when an otherwise valid credential should no longer be honoured because
the user has been idle too long or the session has run past its cap.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from xpoll.app.core.config import Settings, settings
from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.core.store import InMemoryStore, KeyedLock, StateStore
from xpoll.app.exceptions import SessionInvalidError, XPollException

logger = get_logger(__name__)

REASON_NOT_FOUND = "not_found"
REASON_INACTIVITY = "inactivity"
REASON_MAX_DURATION = "max_duration"
REASON_NO_SESSION = "no_session"


@dataclass(frozen=True)
class SessionConfig:
    """Session timing, all in seconds."""
    inactivity_timeout: float = 2 * 60 * 60
    warning_lead: float = 5 * 60
    max_duration: float = 8 * 60 * 60
    refresh_threshold: float = 10 * 60

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "SessionConfig":
        return cls(
            inactivity_timeout=config.session_inactivity_timeout_seconds,
            warning_lead=config.session_warning_seconds,
            max_duration=config.session_max_duration_seconds,
            refresh_threshold=config.session_refresh_threshold_seconds,
        )


@dataclass
class SessionActivity:
    """Activity record for one user."""
    last_activity_at: float
    session_start_at: float
    warning_issued: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionActivity":
        return cls(
            last_activity_at=data["last_activity_at"],
            session_start_at=data["session_start_at"],
            warning_issued=data.get("warning_issued", False),
        )


@dataclass(frozen=True)
class TerminationCheck:
    terminate: bool
    reason: Optional[str] = None


@dataclass
class SessionValidation:
    """Outcome of validate_and_maybe_refresh for one request."""
    valid: bool
    should_refresh: bool = False
    reason: Optional[str] = None
    warn: bool = False
    user: Optional[object] = field(default=None, repr=False)

    @property
    def message(self) -> str:
        if self.reason == REASON_NO_SESSION:
            return "No session found"
        return f"Session terminated due to {self.reason}"


class SessionGuard:
    """Tracks per-user activity and decides when sessions end.

    Termination is advisory: ``should_terminate`` only reports. Revoking the
    credential and deleting the record is done by ``end_session`` or by
    ``validate_and_maybe_refresh``.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        config: Optional[SessionConfig] = None,
        resolver=None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SessionConfig()
        if self.config.warning_lead >= self.config.inactivity_timeout:
            raise ValueError("warning_lead must be shorter than inactivity_timeout")
        self._store = store if store is not None else InMemoryStore(clock=clock)
        self.resolver = resolver
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def store(self) -> StateStore:
        return self._store

    def _ttl(self) -> float:
        # Outlives both limits so an expired record still reports its reason.
        return self.config.inactivity_timeout + self.config.max_duration

    async def get_activity(self, identity: str) -> Optional[SessionActivity]:
        data = await self._store.get(identity)
        return SessionActivity.from_dict(data) if data else None

    async def record_activity(self, identity: str) -> SessionActivity:
        """Mark ``identity`` as active now.

        Keeps the existing session start, or starts a new session. Clears
        the warning flag so the next approach to the cutoff warns again.
        """
        async with self._locks(identity):
            now = self._clock()
            existing = await self.get_activity(identity)
            activity = SessionActivity(
                last_activity_at=now,
                session_start_at=existing.session_start_at if existing else now,
                warning_issued=False,
            )
            await self._store.set(identity, activity.to_dict(), ttl=self._ttl())
        return activity

    async def should_terminate(self, identity: str) -> TerminationCheck:
        activity = await self.get_activity(identity)
        if activity is None:
            return TerminationCheck(True, REASON_NOT_FOUND)

        now = self._clock()
        if now - activity.last_activity_at > self.config.inactivity_timeout:
            return TerminationCheck(True, REASON_INACTIVITY)
        if now - activity.session_start_at > self.config.max_duration:
            return TerminationCheck(True, REASON_MAX_DURATION)
        return TerminationCheck(False)

    async def should_warn(self, identity: str) -> bool:
        """True once when time to the inactivity cutoff first drops into the warning lead."""
        async with self._locks(identity):
            activity = await self.get_activity(identity)
            if activity is None or activity.warning_issued:
                return False

            remaining = self.config.inactivity_timeout - (self._clock() - activity.last_activity_at)
            if remaining > self.config.warning_lead:
                return False

            activity.warning_issued = True
            await self._store.set(identity, activity.to_dict(), ttl=self._ttl())
        return True

    async def seconds_until_timeout(self, identity: str) -> float:
        """Seconds left before the session ends for either limit, 0 if gone."""
        activity = await self.get_activity(identity)
        if activity is None:
            return 0.0
        now = self._clock()
        remaining = min(
            self.config.inactivity_timeout - (now - activity.last_activity_at),
            self.config.max_duration - (now - activity.session_start_at),
        )
        return max(0.0, remaining)

    async def in_warning_window(self, identity: str) -> bool:
        """Read-only check for the warning window, ignoring the one-shot flag."""
        activity = await self.get_activity(identity)
        if activity is None:
            return False
        idle = self._clock() - activity.last_activity_at
        return self.config.inactivity_timeout - idle <= self.config.warning_lead

    async def end_session(self, identity: str) -> bool:
        """Delete the activity record for ``identity``."""
        return await self._store.delete(identity)

    def needs_refresh(self, expires_at: Optional[float]) -> bool:
        """True when the credential expires within the refresh threshold."""
        if expires_at is None:
            return True
        return expires_at - self._clock() < self.config.refresh_threshold

    async def validate_and_maybe_refresh(self, request: Request) -> SessionValidation:
        """Check the session behind a request and extend it if it is still valid.

        A terminated session has its credential revoked and its record
        deleted. Faults from the identity lookup propagate to the caller.
        """
        if self.resolver is None:
            raise RuntimeError("SessionGuard needs an identity resolver to validate requests")

        user = await self.resolver.resolve(request)
        if user is None:
            return SessionValidation(valid=False, reason=REASON_NO_SESSION)

        check = await self.should_terminate(user.id)
        if check.terminate:
            await self.end_session(user.id)
            await self.resolver.revoke(user)
            logger.info(
                f"Session terminated due to {check.reason}",
                extra=get_log_context(user_id=user.id),
            )
            return SessionValidation(valid=False, reason=check.reason, user=user)

        warn = await self.should_warn(user.id)
        await self.record_activity(user.id)
        return SessionValidation(
            valid=True,
            should_refresh=self.needs_refresh(user.expires_at),
            warn=warn,
            user=user,
        )

    async def sweep(self) -> int:
        """Delete records idle longer than the inactivity timeout."""
        now = self._clock()
        timeout = self.config.inactivity_timeout
        return await self._store.sweep(lambda data: now - data["last_activity_at"] > timeout)


class SessionMiddleware(BaseHTTPMiddleware):
    """Middleware that enforces session limits on protected paths.

    Every request that passes counts as activity. Paths in ``exempt_paths``
    are skipped so that polling the session status does not keep the
    session alive. Any fault while validating rejects the request with a 500.
    """

    def __init__(
        self,
        app,
        guard: SessionGuard,
        protected_prefixes: Iterable[str] = ("/api/polls", "/api/session"),
        exempt_paths: Iterable[str] = ("/api/session/status",),
    ):
        super().__init__(app)
        self.guard = guard
        self.protected_prefixes = tuple(protected_prefixes)
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in self.exempt_paths or not path.startswith(self.protected_prefixes):
            return await call_next(request)

        try:
            validation = await self.guard.validate_and_maybe_refresh(request)
        except Exception as e:
            logger.exception(f"Session validation error: {e}")
            error = XPollException("Session could not be validated")
            return JSONResponse(status_code=error.status_code, content=error.to_response())

        if not validation.valid:
            error = SessionInvalidError(validation.reason, validation.message)
            logger.warning(
                f"Session invalid: {validation.reason}",
                extra=get_log_context(path=request.url.path),
            )
            return JSONResponse(status_code=error.status_code, content=error.to_response())

        request.state.session = validation
        response = await call_next(request)
        response.headers["X-Session-Valid"] = "true"
        if validation.should_refresh:
            response.headers["X-Should-Refresh-Session"] = "true"
        if validation.warn:
            response.headers["X-Session-Warning"] = "true"
        return response
