"""Authenticated titulky.com session: cookie jar, login lifecycle, captcha flag."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from .common import browser_headers
from .errors import FailureKind, Ok, Result, Retryable, Terminal, TransientNetworkFailure
from .extract import decode_body
from .settings import settings

log = logging.getLogger("cz_subtitles.session")

# Any of these cookies means the site issued an authenticated session.
AUTH_COOKIES = ("LogonLogin", "LogonId", "CRC")
BAD_LOGIN_MARKER = "BadLogin"
LOGOUT_MARKERS = ("logoff=true", "odhlásit", "odhlasit")
LOGIN_FORM_RE = re.compile(r"<input[^>]+name\s*=\s*[\"']?Password\b", re.IGNORECASE)
CAPTCHA_RE = re.compile(r"captcha/captcha\.php", re.IGNORECASE)

_SET_COOKIE_RE = re.compile(r"^\s*([^=;\s]+)\s*=\s*([^;]*)")
_DELETED_VALUES = {"deleted", ""}


class LoginState(str, Enum):
    LOGGED_OUT = "logged_out"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"


class AuthSession:
    """One titulky.com account.

    Holds the cookie jar and login state shared by the search and download
    engines. Concurrent ``ensure_logged_in()`` callers share one in-flight
    login attempt; a successful login is reused for ``freshness`` seconds.
    """

    def __init__(
        self,
        username: str,
        password: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        freshness: Optional[float] = None,
        captcha_cooldown: Optional[float] = None,
        attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.username = username or ""
        self._password = password or ""
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.freshness = settings.login_freshness_seconds if freshness is None else freshness
        self.captcha_cooldown = settings.captcha_cooldown_seconds if captcha_cooldown is None else captcha_cooldown
        self.attempts = max(1, settings.login_attempts if attempts is None else attempts)
        self.backoff = settings.retry_backoff_seconds if backoff is None else backoff
        self._clock = clock
        self._sleep = sleep

        self.cookies: Dict[str, str] = {}
        self.state = LoginState.LOGGED_OUT
        self.last_login_at: Optional[float] = None
        self.last_failure: Optional[FailureKind] = None
        self.rejected = False
        self.captcha_set_at: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout if timeout is None else timeout),
            follow_redirects=True,
            transport=transport,
        )

    def __repr__(self) -> str:
        return f"AuthSession(username={self.username!r}, state={self.state.value})"

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Captcha flag
    # ------------------------------------------------------------------
    @property
    def captcha_active(self) -> bool:
        if self.captcha_set_at is None:
            return False
        if self._clock() - self.captcha_set_at >= self.captcha_cooldown:
            log.info("Captcha cooldown elapsed for %s; resuming requests", self.username)
            self.captcha_set_at = None
            return False
        return True

    def flag_captcha(self) -> None:
        """Mark the account as captcha-gated.

        The cooldown counts from the first sighting; seeing the captcha again
        while the flag is up does not extend it.
        """
        if self.captcha_active:
            return
        self.captcha_set_at = self._clock()
        log.warning("Captcha required for %s; pausing requests for %ds", self.username, self.captcha_cooldown)

    def captcha_retry_after(self) -> Optional[float]:
        if not self.captcha_active or self.captcha_set_at is None:
            return None
        return max(0.0, self.captcha_cooldown - (self._clock() - self.captcha_set_at))

    # ------------------------------------------------------------------
    # Login lifecycle
    # ------------------------------------------------------------------
    @property
    def is_fresh(self) -> bool:
        return (
            self.state is LoginState.LOGGED_IN
            and self.last_login_at is not None
            and self._clock() - self.last_login_at < self.freshness
        )

    def mark_logged_out(self) -> None:
        if self.state is LoginState.LOGGED_IN:
            log.info("Session for %s looks expired; will log in again", self.username)
        self.state = LoginState.LOGGED_OUT
        self.last_login_at = None

    async def ensure_logged_in(self) -> bool:
        if self.rejected:
            # Rejected credentials are never resent.
            return False
        if self.is_fresh:
            return True
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._login())
        # Shielded so a cancelled caller does not cancel the shared attempt.
        return await asyncio.shield(self._inflight)

    async def _login(self) -> bool:
        try:
            if not self.username or not self._password:
                log.error("Titulky credentials are not configured")
                self.last_failure = FailureKind.BAD_CREDENTIALS
                self.rejected = True
                return False
            self.state = LoginState.LOGGING_IN
            for attempt in range(1, self.attempts + 1):
                outcome = await self._attempt_login()
                if isinstance(outcome, Ok):
                    self.state = LoginState.LOGGED_IN
                    self.last_login_at = self._clock()
                    self.last_failure = None
                    log.info("Logged in to titulky as %s", self.username)
                    return True
                self.last_failure = outcome.kind
                if isinstance(outcome, Terminal):
                    self.rejected = outcome.kind is FailureKind.BAD_CREDENTIALS
                    log.error("Login rejected for %s: %s", self.username, outcome.detail)
                    return False
                if attempt < self.attempts:
                    log.warning(
                        "Login attempt %d/%d for %s failed (%s); retrying in %.1fs",
                        attempt, self.attempts, self.username, outcome.detail, self.backoff,
                    )
                    await self._sleep(self.backoff)
            log.error("Giving up logging in as %s after %d attempts", self.username, self.attempts)
            return False
        finally:
            if self.state is LoginState.LOGGING_IN:
                self.state = LoginState.LOGGED_OUT
            self._inflight = None

    async def _attempt_login(self) -> Result:
        home = self.url("/")
        # Only cookies issued by this attempt count as a login.
        for name in AUTH_COOKIES:
            self.cookies.pop(name, None)
        try:
            landing = await self._send("GET", home)
            if landing.status_code >= 500:
                return Retryable(FailureKind.TRANSIENT_NETWORK, f"landing page HTTP {landing.status_code}")

            response = await self._send(
                "POST",
                self.url("/index.php"),
                referer=home,
                data={"Login": self.username, "Password": self._password, "foreverlog": "0", "Detail2": ""},
                headers={"Origin": self.base_url},
            )
            if response.status_code >= 500:
                return Retryable(FailureKind.TRANSIENT_NETWORK, f"login form HTTP {response.status_code}")
            if BAD_LOGIN_MARKER in decode_body(response.content):
                return Terminal(FailureKind.BAD_CREDENTIALS, "site reported a bad login")
            if not any(name in self.cookies for name in AUTH_COOKIES):
                return Terminal(FailureKind.BAD_CREDENTIALS, "no session cookie was issued")

            check = await self._send("GET", home, referer=home)
            if check.status_code >= 500:
                return Retryable(FailureKind.TRANSIENT_NETWORK, f"verification HTTP {check.status_code}")
            if not self.looks_logged_in(decode_body(check.content)):
                return Terminal(FailureKind.BAD_CREDENTIALS, "landing page does not show a logged-in user")
        except httpx.TransportError as exc:
            return Retryable(FailureKind.TRANSIENT_NETWORK, f"{type(exc).__name__}: {exc}")
        return Ok(True)

    def looks_logged_in(self, html: str) -> bool:
        if LOGIN_FORM_RE.search(html):
            return False
        lowered = html.lower()
        if any(marker in lowered for marker in LOGOUT_MARKERS):
            return True
        return bool(self.username) and self.username.lower() in lowered

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.cookies.items())

    def _merge_cookies(self, response: httpx.Response) -> None:
        for hop in [*response.history, response]:
            for raw in hop.headers.get_list("set-cookie"):
                match = _SET_COOKIE_RE.match(raw)
                if not match:
                    continue
                name, value = match.group(1), match.group(2).strip()
                if value in _DELETED_VALUES:
                    self.cookies.pop(name, None)
                else:
                    self.cookies[name] = value

    async def _send(
        self,
        method: str,
        url: str,
        *,
        referer: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        request_headers = browser_headers(referer)
        if headers:
            request_headers.update(headers)
        if self.cookies:
            request_headers["Cookie"] = self.cookie_header()
        # Redirect hops are sent with the client jar, so keep it in step.
        self._client.cookies.clear()
        for name, value in self.cookies.items():
            self._client.cookies.set(name, value)
        response = await self._client.request(method, url, headers=request_headers, params=params, data=data)
        self._merge_cookies(response)
        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        referer: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """Send a request with the session cookies, retrying transient failures.

        Raises TransientNetworkFailure once every attempt failed at the
        transport level or with a 5xx status.
        """
        detail = ""
        for attempt in range(1, self.attempts + 1):
            try:
                response = await self._send(method, url, referer=referer, params=params, data=data)
            except httpx.TransportError as exc:
                detail = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code < 500:
                    return response
                detail = f"HTTP {response.status_code}"
            if attempt < self.attempts:
                log.warning("%s %s failed (%s); attempt %d/%d", method, url, detail, attempt, self.attempts)
                await self._sleep(self.backoff)
        raise TransientNetworkFailure(f"{method} {url} failed after {self.attempts} attempts ({detail})")

    async def aclose(self) -> None:
        await self._client.aclose()
