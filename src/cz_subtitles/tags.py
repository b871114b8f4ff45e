"""Release tag vocabulary and extraction from free-text release names."""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

RESOLUTION = "resolution"
SOURCE = "source"
CODEC = "codec"
AUDIO = "audio"
EDITION = "edition"

# (family, canonical tag, aliases). Aliases are written in normalized form:
# lower-case words separated by single spaces.
_VOCABULARY: List[Tuple[str, str, Tuple[str, ...]]] = [
    (RESOLUTION, "2160p", ("2160p", "4k", "uhd")),
    (RESOLUTION, "1080p", ("1080p", "1080i")),
    (RESOLUTION, "720p", ("720p",)),
    (RESOLUTION, "480p", ("480p", "576p")),
    (SOURCE, "remux", ("remux",)),
    (SOURCE, "bluray", ("bluray", "blu ray", "bdrip", "brrip", "bd rip", "br rip")),
    (SOURCE, "web-dl", ("web dl", "webdl")),
    (SOURCE, "webrip", ("webrip", "web rip")),
    (SOURCE, "hdtv", ("hdtv", "hdtvrip")),
    (SOURCE, "dvdrip", ("dvdrip", "dvd rip")),
    (SOURCE, "dvdscr", ("dvdscr", "screener")),
    (SOURCE, "cam", ("cam", "hdcam", "camrip")),
    (SOURCE, "ts", ("ts", "hdts", "telesync")),
    (CODEC, "x264", ("x264", "h264", "h 264", "avc")),
    (CODEC, "x265", ("x265", "h265", "h 265")),
    (CODEC, "hevc", ("hevc",)),
    (CODEC, "xvid", ("xvid",)),
    (CODEC, "av1", ("av1",)),
    (AUDIO, "atmos", ("atmos",)),
    (AUDIO, "truehd", ("truehd",)),
    (AUDIO, "dts", ("dts",)),
    (AUDIO, "aac", ("aac",)),
    (AUDIO, "ac3", ("ac3",)),
    (AUDIO, "eac3", ("eac3", "ddp")),
    (AUDIO, "flac", ("flac",)),
    (EDITION, "extended", ("extended",)),
    (EDITION, "directors-cut", ("directors cut", "director s cut")),
    (EDITION, "unrated", ("unrated", "uncut")),
    (EDITION, "remastered", ("remastered", "remaster")),
    (EDITION, "theatrical", ("theatrical",)),
    (EDITION, "imax", ("imax",)),
]

_FAMILY_BY_TAG: Dict[str, str] = {tag: family for family, tag, _ in _VOCABULARY}

RESOLUTION_TAGS = frozenset(t for f, t, _ in _VOCABULARY if f == RESOLUTION)
SOURCE_TAGS = frozenset(t for f, t, _ in _VOCABULARY if f == SOURCE)
CODEC_TAGS = frozenset(t for f, t, _ in _VOCABULARY if f == CODEC)
AUDIO_TAGS = frozenset(t for f, t, _ in _VOCABULARY if f == AUDIO)
EDITION_TAGS = frozenset(t for f, t, _ in _VOCABULARY if f == EDITION)

_SEPARATORS_RE = re.compile(r"[^0-9a-z]+")


def normalize(text: str) -> str:
    """Lower-case and turn every separator run (dots, dashes, underscores...) into one space."""
    return _SEPARATORS_RE.sub(" ", (text or "").lower()).strip()


def extract_tags(text: Optional[str]) -> FrozenSet[str]:
    if not text:
        return frozenset()
    # Padding keeps matches on token boundaries: "ts" must not fire inside "lights".
    haystack = f" {normalize(text)} "
    found = set()
    for _family, tag, aliases in _VOCABULARY:
        if any(f" {alias} " in haystack for alias in aliases):
            found.add(tag)
    return frozenset(found)


def extract_tags_from(texts: Iterable[Optional[str]]) -> FrozenSet[str]:
    tags: FrozenSet[str] = frozenset()
    for text in texts:
        tags |= extract_tags(text)
    return tags


def tag_family(tag: str) -> Optional[str]:
    return _FAMILY_BY_TAG.get(tag)


__all__ = [
    "AUDIO_TAGS",
    "CODEC_TAGS",
    "EDITION_TAGS",
    "RESOLUTION_TAGS",
    "SOURCE_TAGS",
    "extract_tags",
    "extract_tags_from",
    "normalize",
    "tag_family",
]
