import asyncio

import httpx
import pytest

from cz_subtitles.errors import FailureKind, TransientNetworkFailure
from cz_subtitles.session import AuthSession, LoginState


@pytest.mark.asyncio
async def test_login_sets_state_and_cookies(site, make_session):
    session = make_session()
    assert await session.ensure_logged_in() is True
    assert session.state is LoginState.LOGGED_IN
    assert session.cookies["LogonLogin"] == "alice"
    assert session.cookies["LogonId"] == "42"
    # Tracking cookie from the landing page survives the login
    assert session.cookies["PHPSESSID"] == "abc123"
    assert site.login_posts == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_login_posts_expected_form(site, make_session):
    session = make_session()
    await session.ensure_logged_in()
    post = next(r for r in site.requests if r.method == "POST")
    body = post.content.decode()
    assert "Login=alice" in body
    assert "Password=secret" in body
    assert "foreverlog=0" in body
    assert "Detail2=" in body
    # The landing page is fetched before the form is posted
    assert site.requests[0].method == "GET" and site.requests[0].url.path == "/"
    await session.aclose()


@pytest.mark.asyncio
async def test_concurrent_logins_share_one_attempt(site, make_session):
    session = make_session()
    results = await asyncio.gather(*(session.ensure_logged_in() for _ in range(5)))
    assert results == [True] * 5
    assert site.login_posts == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_login_reused_inside_freshness_window(site, make_session, clock):
    session = make_session()
    await session.ensure_logged_in()
    clock.advance(1799)
    await session.ensure_logged_in()
    assert site.login_posts == 1
    clock.advance(2)
    await session.ensure_logged_in()
    assert site.login_posts == 2
    await session.aclose()


@pytest.mark.asyncio
async def test_bad_credentials_are_not_retried(site, make_session, sleeps):
    session = make_session(password="wrong")
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.BAD_CREDENTIALS
    assert session.state is LoginState.LOGGED_OUT
    assert site.login_posts == 1
    assert sleeps == []
    await session.aclose()


@pytest.mark.asyncio
async def test_rejected_credentials_stay_rejected(site, make_session, clock):
    session = make_session(password="wrong")
    for _ in range(3):
        assert await session.ensure_logged_in() is False
    clock.advance(3600)
    assert await session.ensure_logged_in() is False
    assert site.login_posts == 1
    assert session.rejected is True
    assert session.last_failure is FailureKind.BAD_CREDENTIALS
    await session.aclose()


@pytest.mark.asyncio
async def test_transient_failures_are_not_sticky(site, make_session):
    site.connect_failures = 3
    session = make_session()
    assert await session.ensure_logged_in() is False
    assert session.rejected is False
    assert await session.ensure_logged_in() is True
    await session.aclose()


@pytest.mark.asyncio
async def test_missing_session_cookie_is_bad_credentials(site, make_session):
    def _no_cookie_login(request):
        site.login_posts += 1
        return httpx.Response(200, text="<html>ok</html>")

    site._login = _no_cookie_login
    session = make_session()
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.BAD_CREDENTIALS
    await session.aclose()


@pytest.mark.asyncio
async def test_relogin_requires_fresh_session_cookies(site, make_session, clock):
    session = make_session()
    assert await session.ensure_logged_in() is True

    def _no_cookie_login(request):
        site.login_posts += 1
        return httpx.Response(200, text="<html>ok</html>")

    site._login = _no_cookie_login
    clock.advance(1801)
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.BAD_CREDENTIALS
    assert not any(name in session.cookies for name in ("LogonLogin", "LogonId", "CRC"))
    assert site.login_posts == 2
    await session.aclose()


@pytest.mark.asyncio
async def test_verification_page_with_login_form_fails(site, make_session):
    site.is_logged_in = lambda request: False
    session = make_session()
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.BAD_CREDENTIALS
    await session.aclose()


@pytest.mark.asyncio
async def test_empty_credentials_fail_without_network(site, make_session):
    session = make_session(username="", password="")
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.BAD_CREDENTIALS
    assert site.requests == []
    await session.aclose()


@pytest.mark.asyncio
async def test_transport_errors_retry_with_backoff(site, make_session, sleeps):
    site.connect_failures = 10
    session = make_session()
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.TRANSIENT_NETWORK
    assert len(site.requests) == 3
    assert sleeps == [1.0, 1.0]
    await session.aclose()


@pytest.mark.asyncio
async def test_transient_failure_then_success(site, make_session, sleeps):
    site.connect_failures = 1
    session = make_session()
    assert await session.ensure_logged_in() is True
    assert sleeps == [1.0]
    await session.aclose()


@pytest.mark.asyncio
async def test_server_errors_count_as_transient(site, make_session):
    site.landing_status = 503
    session = make_session()
    assert await session.ensure_logged_in() is False
    assert session.last_failure is FailureKind.TRANSIENT_NETWORK
    assert site.login_posts == 0
    await session.aclose()


@pytest.mark.asyncio
async def test_request_sends_cookie_header(site, make_session):
    seen = {}

    def _echo(request):
        seen["cookie"] = request.headers.get("cookie", "")
        seen["referer"] = request.headers.get("referer")
        return httpx.Response(200, text="ok")

    site.route("/echo", _echo)
    session = make_session()
    await session.ensure_logged_in()
    await session.request("GET", session.url("/echo"), referer=session.url("/"))
    assert "LogonId=42" in seen["cookie"]
    assert seen["referer"] == "https://www.titulky.com/"
    await session.aclose()


@pytest.mark.asyncio
async def test_request_raises_after_retries(site, make_session, sleeps):
    site.connect_failures = 3
    session = make_session()
    with pytest.raises(TransientNetworkFailure):
        await session.request("GET", session.url("/anything"))
    assert len(sleeps) == 2
    await session.aclose()


def test_newest_cookie_wins_and_deleted_cookies_drop(make_session):
    session = make_session()
    session.cookies.update({"LogonId": "1", "CRC": "x"})
    request = httpx.Request("GET", "https://www.titulky.com/")
    response = httpx.Response(
        200,
        headers=[("Set-Cookie", "LogonId=2; path=/"), ("Set-Cookie", "CRC=deleted; expires=Thu, 01 Jan 1970 00:00:00 GMT")],
        request=request,
    )
    session._merge_cookies(response)
    assert session.cookies == {"LogonId": "2"}


def test_captcha_flag_clears_after_cooldown_from_first_sighting(make_session, clock):
    session = make_session()
    assert session.captcha_active is False
    session.flag_captcha()
    assert session.captcha_active is True
    clock.advance(600)
    session.flag_captcha()  # does not extend the cooldown
    assert session.captcha_retry_after() == pytest.approx(300)
    clock.advance(301)
    assert session.captcha_active is False
    assert session.captcha_retry_after() is None


def test_looks_logged_in_accepts_username():
    session = AuthSession("karel", "pw", base_url="https://www.titulky.com")
    assert session.looks_logged_in("<div>Uživatel: Karel</div>")
    assert not session.looks_logged_in("<div>Karel</div><input type=password name=Password>")
    assert not session.looks_logged_in("<div>anonymous</div>")
