"""Public entry points: ranked search and cached download on titulky.com."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .cache import BlobCache, MemoryBlobCache, TTLCache
from .download import DownloadEngine
from .errors import FailureKind, Ok, Result, Terminal, session_error_for
from .extract import normalize_encoding
from .matching import MatchResult, MatchScorer, VideoContext
from .search import SearchEngine
from .session import AuthSession
from .settings import settings

log = logging.getLogger("cz_subtitles.client")


@dataclass(frozen=True)
class RankedSubtitle:
    id: str
    link_file: str
    display_label: str
    language_code: str
    score: int = 0

    @classmethod
    def from_match(cls, result: MatchResult) -> "RankedSubtitle":
        record = result.record
        label = record.title
        if record.version and record.version.strip().lower() != record.title.strip().lower():
            label = f"{record.title} | {record.version}"
        return cls(
            id=record.id,
            link_file=record.link_file,
            display_label=label,
            language_code=record.language,
            score=result.score,
        )

    def as_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "linkFile": self.link_file,
            "displayLabel": self.display_label,
            "languageCode": self.language_code,
        }


@dataclass(frozen=True)
class SubtitleFile:
    filename: str
    content: str

    @property
    def utf8_content(self) -> bytes:
        return self.content.encode("utf-8")

    def to_blob(self) -> bytes:
        return json.dumps({"filename": self.filename, "content": self.content}, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_blob(cls, blob: bytes) -> "SubtitleFile":
        payload = json.loads(blob.decode("utf-8"))
        return cls(filename=payload["filename"], content=payload["content"])


def blob_key(subtitle_id: str) -> str:
    return f"titulky/{subtitle_id}"


class TitulkyClient:
    def __init__(
        self,
        session: AuthSession,
        *,
        blob_cache: Optional[BlobCache] = None,
        scorer: Optional[MatchScorer] = None,
        search_engine: Optional[SearchEngine] = None,
        download_engine: Optional[DownloadEngine] = None,
    ):
        self.session = session
        self.blob_cache = blob_cache if blob_cache is not None else MemoryBlobCache(ttl=settings.blob_cache_ttl)
        self.scorer = scorer or MatchScorer()
        self.search_engine = search_engine or SearchEngine(session)
        self.download_engine = download_engine or DownloadEngine(session)

    @property
    def captcha_active(self) -> bool:
        return self.session.captcha_active

    async def _login(self) -> None:
        if await self.session.ensure_logged_in():
            return
        kind = self.session.last_failure or FailureKind.TRANSIENT_NETWORK
        raise session_error_for(kind, f"Could not log in to titulky as {self.session.username or '<unset>'}")

    async def search(
        self,
        title_variants: Iterable[str],
        video_context: Optional[VideoContext] = None,
    ) -> List[RankedSubtitle]:
        """Search all variants and rank the hits against the playing video.

        Captcha and empty input give an empty list; login failures raise
        SessionError.
        """
        variants = [v.strip() for v in title_variants if v and v.strip()]
        if not variants:
            return []
        if self.session.captcha_active:
            log.warning("Captcha cooldown active; skipping titulky search")
            return []
        await self._login()
        records = await self.search_engine.search(variants)
        ranked = self.scorer.rank(records, video_context or VideoContext())
        return [RankedSubtitle.from_match(result) for result in ranked]

    async def download(self, subtitle_id: str, link_file: str) -> Result:
        """Return Ok(SubtitleFile), Terminal(CAPTCHA_REQUIRED) or Terminal(NOT_FOUND)."""
        key = blob_key(subtitle_id)
        cached = self.blob_cache.get(key)
        if cached is not None:
            log.debug("Serving subtitle %s from cache", subtitle_id)
            return Ok(SubtitleFile.from_blob(cached))
        if self.session.captcha_active:
            return Terminal(FailureKind.CAPTCHA_REQUIRED, "captcha cooldown active")

        await self._login()
        outcome = await self.download_engine.download(subtitle_id, link_file)
        if isinstance(outcome, Terminal):
            if outcome.kind is FailureKind.CAPTCHA_REQUIRED:
                return outcome
            log.warning("Subtitle %s unavailable: %s (%s)", subtitle_id, outcome.kind.value, outcome.detail)
            return Terminal(FailureKind.NOT_FOUND, f"{outcome.kind.value}: {outcome.detail}")

        entry = outcome.value[0]
        subtitle = SubtitleFile(filename=os.path.basename(entry.filename), content=normalize_encoding(entry.content))
        self.blob_cache.put(key, subtitle.to_blob())
        return Ok(subtitle)


def _identity(username: str, password: str) -> str:
    return hashlib.sha256(f"{username}\x00{password}".encode("utf-8")).hexdigest()


class SessionPool:
    """Shares one AuthSession per account, closing sessions left idle too long."""

    def __init__(
        self,
        idle_ttl: Optional[float] = None,
        factory: Callable[[str, str], AuthSession] = AuthSession,
        cache: Optional[TTLCache] = None,
    ):
        ttl = settings.session_idle_ttl if idle_ttl is None else idle_ttl
        self._sessions = cache if cache is not None else TTLCache(default_ttl=ttl, sliding=True)
        self._factory = factory

    async def get(self, username: str, password: str) -> AuthSession:
        await self.evict_idle()
        key = _identity(username, password)
        session = self._sessions.get(key)
        if session is None:
            session = self._factory(username, password)
            self._sessions.set(key, session)
            log.debug("Created titulky session for %s", username)
        return session

    async def evict_idle(self) -> int:
        expired = self._sessions.pop_expired()
        for session in expired:
            log.debug("Closing idle titulky session for %s", session.username)
            await session.aclose()
        return len(expired)

    async def aclose(self) -> None:
        for session in self._sessions.values():
            await session.aclose()
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["RankedSubtitle", "SessionPool", "SubtitleFile", "TitulkyClient", "blob_key"]
