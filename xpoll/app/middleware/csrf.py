"""CSRF protection for state-changing requests.

Tokens are random values issued to an authenticated identity. Only a
SHA256 hash of each token is stored, bound to its owner and an expiry.
"""

import re
import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from xpoll.app.core.config import settings
from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.core.security import generate_token, hash_token
from xpoll.app.core.store import InMemoryStore, KeyedLock, StateStore
from xpoll.app.exceptions import CSRFValidationError

logger = get_logger(__name__)

DEFAULT_PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class CSRFTokenRecord:
    """Stored form of an issued token. Never mutated after issue."""
    owner_identity: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CSRFTokenRecord":
        return cls(
            owner_identity=data["owner_identity"],
            issued_at=data["issued_at"],
            expires_at=data["expires_at"],
        )


class CSRFGuard:
    """Issues and validates per-identity anti-forgery tokens.

    A token validates any number of times for its owner until it expires.
    Presenting an expired token evicts its record.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        token_ttl_seconds: float = 24 * 60 * 60,
        token_bytes: int = 32,
        clock: Callable[[], float] = time.time,
    ):
        if token_bytes < 32:
            raise ValueError("token_bytes must be at least 32")
        self._store = store if store is not None else InMemoryStore(clock=clock)
        self.token_ttl_seconds = token_ttl_seconds
        self.token_bytes = token_bytes
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def store(self) -> StateStore:
        return self._store

    async def issue(self, identity: str) -> str:
        """Issue a new token for ``identity`` and return the raw value.

        Raises:
            ValueError: If identity is empty.
        """
        if not identity:
            raise ValueError("Cannot issue a CSRF token without an identity")

        token = generate_token(self.token_bytes)
        token_hash = hash_token(token)
        now = self._clock()
        record = CSRFTokenRecord(
            owner_identity=identity,
            issued_at=now,
            expires_at=now + self.token_ttl_seconds,
        )
        # Store TTL outlives the token so validate() still sees and evicts it.
        await self._store.set(token_hash, record.to_dict(), ttl=self.token_ttl_seconds * 2)
        logger.debug(
            f"Issued CSRF token {token_hash[:8]}",
            extra=get_log_context(user_id=identity),
        )
        return token

    async def validate(self, identity: Optional[str], token: Optional[str]) -> bool:
        """Check that ``token`` was issued to ``identity`` and has not expired."""
        if not identity or not token:
            return False

        token_hash = hash_token(token)
        async with self._locks(token_hash):
            data = await self._store.get(token_hash)
            if data is None:
                return False

            record = CSRFTokenRecord.from_dict(data)
            if record.owner_identity != identity:
                logger.warning(
                    f"CSRF token {token_hash[:8]} presented by a different identity",
                    extra=get_log_context(user_id=identity),
                )
                return False

            if record.is_expired(self._clock()):
                await self._store.delete(token_hash)
                logger.debug(f"Evicted expired CSRF token {token_hash[:8]}")
                return False

        return True

    async def get_record(self, token: str) -> Optional[CSRFTokenRecord]:
        """Look up the record for a raw token without side effects."""
        data = await self._store.get(hash_token(token))
        return CSRFTokenRecord.from_dict(data) if data else None

    async def revoke(self, token: str) -> bool:
        """Delete the record for a raw token."""
        return await self._store.delete(hash_token(token))

    async def sweep(self) -> int:
        """Delete all expired token records."""
        now = self._clock()
        return await self._store.sweep(lambda data: now > data["expires_at"])


def set_csrf_cookie(response: Response, token: str, max_age: Optional[int] = None) -> None:
    """Set the CSRF token cookie on a response."""
    response.set_cookie(
        key=settings.csrf_cookie_name,
        value=token,
        max_age=max_age if max_age is not None else settings.csrf_token_ttl_seconds,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )


def extract_csrf_token(request: Request) -> Optional[str]:
    """Read the token from the request header, falling back to the cookie."""
    token = (request.headers.get(settings.csrf_header_name) or "").strip()
    return token or request.cookies.get(settings.csrf_cookie_name) or None


class CSRFProtectionMiddleware(BaseHTTPMiddleware):
    """Middleware that requires a valid CSRF token on state-changing requests.

    Methods in ``protected_methods`` are checked by default; safe methods
    pass through. ``route_methods`` overrides the method set for paths
    matching a regex, e.g. ``{r"^/api/polls/[^/]+$": {"DELETE"}}``. Any
    fault during validation rejects the request.
    """

    def __init__(
        self,
        app,
        guard: CSRFGuard,
        resolver,
        protected_methods: Iterable[str] = DEFAULT_PROTECTED_METHODS,
        exempt_paths: Iterable[str] = (),
        exempt_prefixes: Iterable[str] = (),
        route_methods: Optional[dict[str, Iterable[str]]] = None,
    ):
        super().__init__(app)
        self.guard = guard
        self.resolver = resolver
        self.protected_methods = frozenset(m.upper() for m in protected_methods)
        self.exempt_paths = frozenset(exempt_paths)
        self.exempt_prefixes = tuple(exempt_prefixes)
        self.route_methods = [
            (re.compile(pattern), frozenset(m.upper() for m in methods))
            for pattern, methods in (route_methods or {}).items()
        ]

    def methods_for(self, path: str) -> frozenset[str]:
        for pattern, methods in self.route_methods:
            if pattern.match(path):
                return methods
        return self.protected_methods

    def requires_check(self, method: str, path: str) -> bool:
        if path in self.exempt_paths or path.startswith(self.exempt_prefixes):
            return False
        return method.upper() in self.methods_for(path)

    def _reject(self, reason: str) -> JSONResponse:
        error = CSRFValidationError(reason)
        return JSONResponse(status_code=error.status_code, content=error.to_response())

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        if not self.requires_check(request.method, request.url.path):
            return await call_next(request)

        try:
            user = await self.resolver.resolve(request)
            if user is None:
                reason = "identity_missing"
            else:
                token = extract_csrf_token(request)
                if token is None:
                    reason = "token_missing"
                elif await self.guard.validate(user.id, token):
                    reason = None
                else:
                    reason = "token_invalid"
        except Exception as e:
            logger.exception(f"CSRF validation error: {e}")
            reason = "validation_error"

        if reason is not None:
            logger.warning(
                f"CSRF validation failed: {reason}",
                extra=get_log_context(path=request.url.path, method=request.method),
            )
            return self._reject(reason)

        request.state.csrf_validated = True
        response = await call_next(request)
        response.headers["X-CSRF-Protected"] = "true"
        return response
