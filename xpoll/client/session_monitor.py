"""Client-side session inactivity monitor.

Runs next to the user interface rather than in the request cycle: it
records user interaction in a persisted last-activity marker, reconciles
with the server's session status on a timer, and signs the user out when
the session has expired.
"""

import asyncio
import inspect
import json
import math
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from xpoll.app.core.logging import get_logger

logger = get_logger(__name__)

ACTIVITY_EVENTS = ("pointerdown", "pointermove", "keypress", "scroll", "touchstart")
LAST_ACTIVITY_KEY = "lastActivity"

Callback = Callable[..., Union[None, Awaitable[None]]]


class MarkerStore(ABC):
    """Small persisted key/value store for session markers."""

    @abstractmethod
    def get(self, key: str) -> Optional[float]:
        pass

    @abstractmethod
    def set(self, key: str, value: float) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class InMemoryMarkerStore(MarkerStore):
    def __init__(self):
        self._data: dict[str, float] = {}

    def get(self, key: str) -> Optional[float]:
        return self._data.get(key)

    def set(self, key: str, value: float) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileMarkerStore(MarkerStore):
    """Markers kept in a JSON file so they survive restarts of the client."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session marker file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[float]:
        value = self._load().get(key)
        return float(value) if isinstance(value, (int, float)) else None

    def set(self, key: str, value: float) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)


@dataclass(frozen=True)
class MonitorConfig:
    inactivity_timeout: float = 2 * 60 * 60
    warning_lead: float = 5 * 60
    check_interval: float = 60
    status_path: str = "/api/session/status"
    activity_path: str = "/api/session/activity"
    csrf_path: str = "/api/csrf-token"
    refresh_path: str = "/api/auth/refresh"
    signout_path: str = "/api/auth/signout"
    login_path: str = "/auth/login"


class SessionMonitor:
    """Keeps the client's view of the session in step with the server.

    Args:
        http_client: Client pointed at the API (base_url and cookies set)
        marker_store: Where the last-activity marker is persisted
        on_expired: Called as ``on_expired(reason, login_path)``; this is
            where the UI redirects to the sign-in page
        on_warning: Called as ``on_warning(minutes_left)``
        config: Timing and endpoint paths
        clock: Time source, epoch seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        marker_store: Optional[MarkerStore] = None,
        on_expired: Optional[Callback] = None,
        on_warning: Optional[Callback] = None,
        config: Optional[MonitorConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http_client
        self.markers = marker_store or InMemoryMarkerStore()
        self.on_expired = on_expired
        self.on_warning = on_warning
        self.config = config or MonitorConfig()
        self._clock = clock
        self._stop_event = asyncio.Event()
        self.expired = False
        self.csrf_token: Optional[str] = None

    @staticmethod
    async def _call(callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    def touch(self) -> None:
        self.markers.set(LAST_ACTIVITY_KEY, self._clock())

    def handle_event(self, event_name: str) -> bool:
        """Record a UI event. Returns True if it counted as activity."""
        if event_name not in ACTIVITY_EVENTS or self.expired:
            return False
        self.touch()
        return True

    async def _csrf_token(self) -> Optional[str]:
        if self.csrf_token is None:
            response = await self.http.get(self.config.csrf_path)
            if response.status_code == 200:
                self.csrf_token = response.json().get("token")
        return self.csrf_token

    async def extend(self) -> bool:
        """Keep the session alive after the user confirms a warning.

        Retries once with a fresh CSRF token if the first one is rejected.
        """
        self.touch()
        try:
            for attempt in range(2):
                token = await self._csrf_token()
                headers = {"X-CSRF-Token": token} if token else {}
                response = await self.http.post(self.config.activity_path, headers=headers)
                if response.status_code == 403 and attempt == 0:
                    self.csrf_token = None
                    continue
                break
        except httpx.HTTPError as e:
            logger.error(f"Session keep-alive failed: {e}")
            return False
        if response.status_code == 401:
            await self.expire("Session expired")
            return False
        if response.status_code != 200:
            logger.error(f"Session keep-alive failed with status {response.status_code}")
            return False
        return await self.refresh()

    async def refresh(self) -> bool:
        """Ask the server for a fresh access token; expire the session on failure."""
        try:
            response = await self.http.post(self.config.refresh_path)
        except httpx.HTTPError as e:
            logger.error(f"Session refresh failed: {e}")
            await self.expire("Session refresh failed")
            return False
        if response.status_code != 200:
            await self.expire("Failed to refresh session")
            return False
        return True

    async def expire(self, reason: str) -> None:
        """Clear local markers, sign out, and hand over to the redirect hook."""
        if self.expired:
            return
        self.expired = True
        logger.info(f"Session expired: {reason}")
        self.markers.remove(LAST_ACTIVITY_KEY)
        try:
            token = await self._csrf_token()
            headers = {"X-CSRF-Token": token} if token else {}
            await self.http.post(self.config.signout_path, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Sign-out request failed: {e}")
        self._stop_event.set()
        await self._call(self.on_expired, reason, self.config.login_path)

    async def check(self) -> str:
        """Reconcile local and server session state once.

        Returns:
            One of "ok", "warning", "refreshed", "expired" or "error".
        """
        if self.expired:
            return "expired"

        try:
            response = await self.http.get(self.config.status_path)
        except httpx.HTTPError as e:
            logger.error(f"Session check failed: {e}")
            return "error"

        if response.status_code == 401:
            await self.expire("No active session")
            return "expired"
        if response.status_code != 200:
            logger.error(f"Session check failed with status {response.status_code}")
            return "error"

        status = response.json()
        if not status.get("valid"):
            await self.expire(f"Session invalid: {status.get('reason') or 'unknown'}")
            return "expired"

        outcome = "ok"
        last_activity = self.markers.get(LAST_ACTIVITY_KEY)
        if last_activity is not None:
            idle = self._clock() - last_activity
            if idle > self.config.inactivity_timeout:
                await self.expire("Session expired due to inactivity")
                return "expired"
            time_left = self.config.inactivity_timeout - idle
            if time_left <= self.config.warning_lead:
                await self._call(self.on_warning, math.ceil(time_left / 60))
                outcome = "warning"

        if status.get("should_refresh"):
            if not await self.refresh():
                return "expired"
            if outcome == "ok":
                outcome = "refreshed"

        return outcome

    async def run(self, interval: Optional[float] = None) -> None:
        """Check on a fixed interval until stopped or expired."""
        interval = interval or self.config.check_interval
        self._stop_event.clear()
        while not self._stop_event.is_set() and not self.expired:
            await self.check()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop_event.set()
