"""Captcha/countdown gated download of a subtitle archive."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .errors import FailureKind, Ok, Result, Terminal, TransientNetworkFailure
from .extract import SubtitleExtractionError, decode_body, extract_subtitles
from .session import CAPTCHA_RE, AuthSession
from .settings import settings

log = logging.getLogger("cz_subtitles.download")

COUNTDOWN_RE = re.compile(r"CountDown\((\d+)\)", re.IGNORECASE)
ZIP_MAGIC = b"PK\x03\x04"


@dataclass(frozen=True)
class DownloadPage:
    captcha: bool
    countdown: int = 0
    link: Optional[str] = None


def parse_download_page(html: str) -> DownloadPage:
    if CAPTCHA_RE.search(html):
        return DownloadPage(captcha=True)
    match = COUNTDOWN_RE.search(html)
    countdown = int(match.group(1)) if match else 0
    anchor = BeautifulSoup(html, "html.parser").find("a", id="downlink")
    link = (anchor.get("href") or "").strip() if anchor is not None else ""
    return DownloadPage(captcha=False, countdown=countdown, link=link or None)


class Deadline:
    """Time budget shared by the network steps of one pipeline run.

    Only awaited calls routed through ``run()`` are charged against it.
    """

    def __init__(self, budget: float, clock: Callable[[], float] = time.monotonic):
        self.budget = budget
        self.spent = 0.0
        self._clock = clock

    def remaining(self) -> float:
        return self.budget - self.spent

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TransientNetworkFailure("download deadline exhausted")
        started = self._clock()
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise TransientNetworkFailure(f"download exceeded its {self.budget:.0f}s budget") from exc
        finally:
            self.spent += self._clock() - started


class DownloadEngine:
    def __init__(
        self,
        session: AuthSession,
        *,
        pipeline_timeout: Optional[float] = None,
        min_archive_bytes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], float] = time.time,
    ):
        self.session = session
        self.pipeline_timeout = settings.pipeline_timeout if pipeline_timeout is None else pipeline_timeout
        self.min_archive_bytes = settings.min_archive_bytes if min_archive_bytes is None else min_archive_bytes
        self._sleep = sleep
        self._clock = clock
        self._now = now

    async def download(self, subtitle_id: str, link_file: str) -> Result:
        """Fetch and unpack one subtitle.

        Returns ``Ok(list[ArchiveEntry])`` or a ``Terminal`` naming the step
        that failed. Network failures after retries raise
        TransientNetworkFailure.
        """
        if self.session.captcha_active:
            return Terminal(FailureKind.CAPTCHA_REQUIRED, "captcha cooldown active")

        deadline = Deadline(self.pipeline_timeout, clock=self._clock)
        page_url = self.session.url("/idown.php")
        response = await deadline.run(
            self.session.request(
                "GET",
                page_url,
                params={"R": str(int(self._now())), "titulky": subtitle_id, "histstamp": "", "zip": "z"},
                referer=self.session.url(f"/{link_file}.htm"),
            )
        )
        page = parse_download_page(decode_body(response.content))
        if page.captcha:
            self.session.flag_captcha()
            return Terminal(FailureKind.CAPTCHA_REQUIRED, "download page asked for a captcha")
        if not page.link:
            log.warning("No download link on the page for subtitle %s", subtitle_id)
            return Terminal(FailureKind.LINK_NOT_FOUND, f"no download link for {subtitle_id}")

        if page.countdown > 0:
            log.info("Waiting %ds before downloading subtitle %s", page.countdown, subtitle_id)
            await self._sleep(page.countdown)

        archive = await deadline.run(
            self.session.request("GET", urljoin(self.session.base_url + "/", page.link), referer=page_url)
        )
        data = archive.content
        if len(data) < self.min_archive_bytes:
            return Terminal(FailureKind.ARCHIVE_TOO_SMALL, f"archive is only {len(data)} bytes")
        if not data.startswith(ZIP_MAGIC) and CAPTCHA_RE.search(decode_body(data[:65536])):
            self.session.flag_captcha()
            return Terminal(FailureKind.CAPTCHA_REQUIRED, "archive request answered with a captcha")

        try:
            entries = extract_subtitles(data, fallback_name=f"{link_file}.srt")
        except SubtitleExtractionError as exc:
            return Terminal(FailureKind.NO_SUBTITLE_FILE_IN_ARCHIVE, str(exc))
        log.info("Downloaded subtitle %s (%d bytes, %d files)", subtitle_id, len(data), len(entries))
        return Ok(entries)


__all__ = ["Deadline", "DownloadEngine", "DownloadPage", "parse_download_page"]
