import io
import zipfile

import httpx
import pytest

from cz_subtitles.download import Deadline, DownloadEngine, parse_download_page
from cz_subtitles.errors import FailureKind, Ok, Terminal, TransientNetworkFailure

SRT = "1\n00:00:01,000 --> 00:00:02,000\nAhoj světe\n".encode("utf-8")

DOWNLOAD_PAGE = """
<html><head><script>CountDown(12);</script></head>
<body><a id="downlink" href="/idown.php?id=555&zip=z">Stáhnout</a></body></html>
"""


def make_zip(files):
    bio = io.BytesIO()
    with zipfile.ZipFile(bio, mode="w") as z:
        for name, content in files.items():
            z.writestr(name, content)
    return bio.getvalue()


def install_download(site, page=DOWNLOAD_PAGE, archive=None):
    archive = make_zip({"The.Matrix.srt": SRT}) if archive is None else archive

    def _handler(request):
        if "titulky" in request.url.params:
            return httpx.Response(200, text=page)
        return httpx.Response(200, content=archive)

    site.route("/idown.php", _handler)


def test_parse_download_page():
    page = parse_download_page(DOWNLOAD_PAGE)
    assert page.captcha is False
    assert page.countdown == 12
    assert page.link == "/idown.php?id=555&zip=z"

    assert parse_download_page("<img src='captcha/captcha.php'>").captcha is True
    assert parse_download_page("<html>nothing</html>").link is None


@pytest.mark.asyncio
async def test_download_waits_countdown_and_unpacks(site, make_session, sleeps, fake_sleep):
    install_download(site)
    session = make_session()
    engine = DownloadEngine(session, sleep=fake_sleep, now=lambda: 1700000000)
    result = await engine.download("123456", "The-Matrix-123456")

    assert isinstance(result, Ok)
    assert result.value[0].filename == "The.Matrix.srt"
    assert result.value[0].content == SRT
    assert sleeps == [12]

    page_request, archive_request = site.requests
    assert page_request.url.params["R"] == "1700000000"
    assert page_request.url.params["titulky"] == "123456"
    assert page_request.url.params["zip"] == "z"
    assert page_request.url.params["histstamp"] == ""
    assert page_request.headers["referer"] == "https://www.titulky.com/The-Matrix-123456.htm"
    assert str(archive_request.url) == "https://www.titulky.com/idown.php?id=555&zip=z"
    assert archive_request.headers["referer"] == "https://www.titulky.com/idown.php"
    await session.aclose()


def _recording_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep


@pytest.mark.asyncio
async def test_captcha_page_sets_session_flag(site, make_session):
    install_download(site, page="<html><img src='/captcha/captcha.php'></html>")
    session = make_session()
    result = await DownloadEngine(session, sleep=_recording_sleep([])).download("1", "Movie-1")
    assert result == Terminal(FailureKind.CAPTCHA_REQUIRED, result.detail)
    assert session.captcha_active is True
    assert len(site.requests) == 1

    again = await DownloadEngine(session).download("1", "Movie-1")
    assert again.kind is FailureKind.CAPTCHA_REQUIRED
    assert len(site.requests) == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_missing_link(site, make_session):
    install_download(site, page="<html><body>Soubor neexistuje</body></html>")
    session = make_session()
    result = await DownloadEngine(session, sleep=_recording_sleep([])).download("1", "Movie-1")
    assert isinstance(result, Terminal)
    assert result.kind is FailureKind.LINK_NOT_FOUND
    await session.aclose()


@pytest.mark.asyncio
async def test_tiny_archive_rejected(site, make_session):
    install_download(site, archive=b"PK\x03\x04tiny")
    session = make_session()
    result = await DownloadEngine(session, sleep=_recording_sleep([])).download("1", "Movie-1")
    assert result.kind is FailureKind.ARCHIVE_TOO_SMALL
    await session.aclose()


@pytest.mark.asyncio
async def test_archive_without_subtitles(site, make_session):
    install_download(site, archive=make_zip({"readme.nfo": "x" * 200, "cover.jpg": "y" * 200}))
    session = make_session()
    result = await DownloadEngine(session, sleep=_recording_sleep([])).download("1", "Movie-1")
    assert result.kind is FailureKind.NO_SUBTITLE_FILE_IN_ARCHIVE
    await session.aclose()


@pytest.mark.asyncio
async def test_raw_subtitle_body_is_accepted(site, make_session):
    install_download(site, archive=SRT * 3)
    session = make_session()
    result = await DownloadEngine(session, sleep=_recording_sleep([])).download("7", "Movie-7")
    assert isinstance(result, Ok)
    assert result.value[0].filename == "Movie-7.srt"
    assert result.value[0].content == SRT * 3
    await session.aclose()


@pytest.mark.asyncio
async def test_countdown_does_not_count_against_deadline(site, make_session, clock):
    install_download(site, page=DOWNLOAD_PAGE.replace("CountDown(12)", "CountDown(60)"))
    session = make_session()

    async def slow_sleep(seconds):
        clock.advance(seconds)

    engine = DownloadEngine(session, pipeline_timeout=5, sleep=slow_sleep, clock=clock)
    result = await engine.download("1", "Movie-1")
    assert isinstance(result, Ok)
    await session.aclose()


@pytest.mark.asyncio
async def test_deadline_exhaustion_raises(clock):
    deadline = Deadline(1.0, clock=clock)

    async def step():
        clock.advance(2.0)
        return "done"

    assert await deadline.run(step()) == "done"
    assert deadline.remaining() == pytest.approx(-1.0)
    with pytest.raises(TransientNetworkFailure):
        await deadline.run(step())
