"""Cookie session authentication for CouchDB-compatible servers."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Generator, Optional

import httpx

from .errors import AuthError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "AuthSession"


class SessionAuthError(AuthError):
    """Raised when a session cannot be acquired."""


class CouchSessionAuth(httpx.Auth):
    """httpx auth flow that logs in via ``POST /_session`` and reuses the cookie.

    The session is renewed once ``renew_after_fraction`` of its lifetime has
    elapsed, and re-acquired once when the server answers 401.
    """

    requires_response_body = False

    def __init__(
        self,
        *,
        base_url: str,
        username: str,
        password: str,
        session_lifetime_seconds: float = 600.0,
        renew_after_fraction: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")
        if not username:
            raise ValueError("username must be provided")
        self._session_url = f"{base_url.rstrip('/')}/_session"
        self._username = username
        self._password = password
        self._renew_after = max(1.0, session_lifetime_seconds * renew_after_fraction)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._acquired_at = 0.0

    @property
    def token(self) -> Optional[str]:
        with self._lock:
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    def auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        if self._needs_session():
            login = yield self._login_request()
            self._store_session(login)
        self._apply(request)
        response = yield request
        if response.status_code != 401:
            return
        logger.info("session cookie rejected (HTTP 401); logging in again")
        self.invalidate()
        login = yield self._login_request()
        self._store_session(login)
        self._apply(request)
        yield request

    # ------------------------------------------------------------------ Internal helpers
    def _needs_session(self) -> bool:
        with self._lock:
            if not self._token:
                return True
            return self._clock() - self._acquired_at >= self._renew_after

    def _login_request(self) -> httpx.Request:
        return httpx.Request(
            "POST",
            self._session_url,
            json={"name": self._username, "password": self._password},
            headers={"Accept": "application/json"},
        )

    def _store_session(self, response: httpx.Response) -> None:
        status = response.status_code
        if status >= 400:
            raise SessionAuthError(
                f"session login failed with HTTP {status}", status_code=status
            )
        token = response.cookies.get(SESSION_COOKIE)
        if not token:
            raise SessionAuthError(
                f"session login response carried no {SESSION_COOKIE} cookie",
                status_code=status,
            )
        with self._lock:
            self._token = token
            self._acquired_at = self._clock()
        logger.debug("session cookie acquired for %s", self._username)

    def _apply(self, request: httpx.Request) -> None:
        with self._lock:
            token = self._token
        if token:
            request.headers["Cookie"] = f"{SESSION_COOKIE}={token}"


__all__ = ["CouchSessionAuth", "SessionAuthError"]
