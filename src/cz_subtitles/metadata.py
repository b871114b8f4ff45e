from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import unquote

import httpx

log = logging.getLogger("cz_subtitles.metadata")

# Prefer v3 endpoint; fall back to cinemeta-live if needed
CINEMETA_BASES = [
    "https://v3-cinemeta.strem.io",
    "https://cinemeta-live.strem.io",
]
CINEMETA_TIMEOUT = 10.0


@dataclass(frozen=True)
class StremioID:
    imdb_id: str
    season: Optional[int] = None
    episode: Optional[int] = None

    @property
    def is_imdb(self) -> bool:
        return self.imdb_id.startswith("tt")


def _as_int(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def parse_stremio_id(raw_id: str) -> StremioID:
    """``tt123`` or ``tt123:1:2``; players sometimes send the colons percent-encoded twice."""
    text = raw_id or ""
    while "%" in text and unquote(text) != text:
        text = unquote(text)
    imdb_id, _, rest = text.partition(":")
    season, _, episode = rest.partition(":")
    return StremioID(imdb_id=imdb_id, season=_as_int(season), episode=_as_int(episode))


@dataclass
class MediaInfo:
    name: str
    year: str = ""
    season: Optional[int] = None
    episode: Optional[int] = None
    aliases: List[str] = field(default_factory=list)

    @property
    def is_episode(self) -> bool:
        return self.season is not None and self.episode is not None

    def title_variants(self) -> List[str]:
        """Search strings to try on titulky, most specific first."""
        variants: List[str] = []
        if self.is_episode:
            variants.append(f"{self.name} S{self.season:02d}E{self.episode:02d}")
            variants.append(self.name)
        else:
            variants.append(self.name)
            variants.extend(self.aliases)
            if self.year:
                variants.append(f"{self.name} {self.year}")
        seen = set()
        unique = []
        for variant in variants:
            key = variant.strip().lower()
            if key and key not in seen:
                seen.add(key)
                unique.append(variant.strip())
        return unique


def normalize_year(raw: Optional[str]) -> str:
    if not raw:
        return ""
    match = re.search(r"(19|20)\d{2}", str(raw))
    return match.group(0) if match else ""


async def fetch_cinemeta_meta(client: httpx.AsyncClient, media_type: str, imdb_id: str) -> Optional[dict]:
    last_exc: Optional[Exception] = None
    for base in CINEMETA_BASES:
        url = f"{base}/meta/{media_type}/{imdb_id}.json"
        try:
            resp = await client.get(url)
            if resp.status_code == 404:
                continue
            resp.raise_for_status()
            return resp.json().get("meta")
        except (httpx.HTTPError, ValueError) as exc:
            last_exc = exc
            continue
    if last_exc:
        log.warning("Failed to fetch Cinemeta metadata for %s", imdb_id, exc_info=last_exc)
    else:
        log.warning("Failed to fetch Cinemeta metadata for %s: all endpoints returned 404", imdb_id)
    return None


def _aliases(meta: dict, name: str) -> List[str]:
    raw = meta.get("aliases") or []
    if isinstance(raw, str):
        raw = [raw]
    return [alias for alias in raw if isinstance(alias, str) and alias.strip() and alias != name]


async def resolve_media(
    media_type: str,
    raw_id: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[MediaInfo]:
    tokens = parse_stremio_id(raw_id)
    if not tokens.is_imdb:
        log.info("Unsupported id %r; only IMDb ids are resolved", raw_id)
        return None

    if client is None:
        async with httpx.AsyncClient(timeout=CINEMETA_TIMEOUT) as own_client:
            meta = await fetch_cinemeta_meta(own_client, media_type, tokens.imdb_id)
    else:
        meta = await fetch_cinemeta_meta(client, media_type, tokens.imdb_id)
    if not meta or not meta.get("name"):
        return None

    name = meta["name"].strip()
    info = MediaInfo(
        name=name,
        year=normalize_year(meta.get("releaseInfo") or meta.get("released") or meta.get("year")),
        aliases=_aliases(meta, name),
    )
    if media_type == "series":
        info.season = tokens.season
        info.episode = tokens.episode
    return info
