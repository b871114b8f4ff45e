from urllib.parse import parse_qs

import httpx
import pytest

from cz_subtitles.session import AuthSession

BASE_URL = "https://www.titulky.com"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTitulky:
    """Tiny stand-in for titulky.com served through httpx.MockTransport."""

    login_page = (
        "<html><body><form action='/index.php' method='post'>"
        "<input type='text' name='Login'><input type='password' name='Password'>"
        "</form></body></html>"
    )
    logged_in_page = "<html><body>Přihlášen: alice <a href='/index.php?Logoff=true'>Odhlásit</a></body></html>"

    def __init__(self, username: str = "alice", password: str = "secret"):
        self.username = username
        self.password = password
        self.requests = []
        self.login_posts = 0
        self.landing_status = 200
        self.connect_failures = 0
        self.routes = {}

    def route(self, path, handler):
        self.routes[path] = handler

    def is_logged_in(self, request: httpx.Request) -> bool:
        return "LogonId=42" in request.headers.get("cookie", "")

    def paths(self):
        return [r.url.path for r in self.requests]

    def _login(self, request: httpx.Request) -> httpx.Response:
        self.login_posts += 1
        form = parse_qs(request.content.decode("utf-8"))
        if form.get("Login") != [self.username] or form.get("Password") != [self.password]:
            return httpx.Response(200, text="<html><script>location='/?BadLogin=1'</script></html>")
        return httpx.Response(
            302,
            headers=[
                ("Location", f"{BASE_URL}/"),
                ("Set-Cookie", f"LogonLogin={self.username}; path=/"),
                ("Set-Cookie", "LogonId=42; path=/"),
            ],
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.connect_failures:
            self.connect_failures -= 1
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if request.method == "POST" and path == "/index.php":
            return self._login(request)
        if path in self.routes:
            return self.routes[path](request)
        if path == "/":
            if self.landing_status >= 500:
                return httpx.Response(self.landing_status, text="maintenance")
            if self.is_logged_in(request):
                return httpx.Response(200, text=self.logged_in_page)
            return httpx.Response(200, text=self.login_page, headers={"Set-Cookie": "PHPSESSID=abc123; path=/"})
        return httpx.Response(404, text="not found")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def site():
    return FakeTitulky()


@pytest.fixture
def make_session(site, clock, fake_sleep):
    def _make(username="alice", password="secret", **kwargs):
        kwargs.setdefault("freshness", 1800)
        kwargs.setdefault("captcha_cooldown", 900)
        kwargs.setdefault("attempts", 3)
        kwargs.setdefault("backoff", 1.0)
        return AuthSession(
            username,
            password,
            base_url=BASE_URL,
            transport=httpx.MockTransport(site),
            clock=clock,
            sleep=fake_sleep,
            **kwargs,
        )

    return _make
