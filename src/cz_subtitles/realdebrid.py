"""Real-Debrid lookups used to learn the release name of the playing video."""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from .matching import TorrentCandidate

log = logging.getLogger("cz_subtitles.realdebrid")

RD_API_BASE = "https://api.real-debrid.com/rest/1.0"
RD_TIMEOUT = 5.0
HISTORY_LIMIT = 50


def _candidates(items: object, size_key: str) -> List[TorrentCandidate]:
    if not isinstance(items, list):
        return []
    out: List[TorrentCandidate] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("filename"):
            continue
        size = item.get(size_key)
        out.append(TorrentCandidate(filename=str(item["filename"]), size_bytes=int(size) if size else None))
    return out


async def _get_json(client: httpx.AsyncClient, token: str, path: str, params: Optional[dict] = None) -> object:
    resp = await client.get(
        f"{RD_API_BASE}{path}",
        params=params,
        headers={"Authorization": f"Bearer {token}"},
    )
    if resp.status_code == 204:
        return []
    resp.raise_for_status()
    return resp.json()


async def fetch_torrent_history(token: Optional[str], client: Optional[httpx.AsyncClient] = None) -> List[TorrentCandidate]:
    """Active streams first, then recent torrents. Never raises."""
    if not token:
        return []
    own = client is None
    http = client or httpx.AsyncClient(timeout=RD_TIMEOUT)
    try:
        candidates: List[TorrentCandidate] = []
        for path, params, size_key in (
            ("/streaming/active", None, "filesize"),
            ("/torrents", {"limit": HISTORY_LIMIT}, "bytes"),
        ):
            try:
                candidates.extend(_candidates(await _get_json(http, token, path, params), size_key))
            except (httpx.HTTPError, ValueError) as exc:
                log.warning("Real-Debrid %s lookup failed: %s", path, exc)
        log.debug("Real-Debrid returned %d candidates", len(candidates))
        return candidates
    finally:
        if own:
            await http.aclose()
