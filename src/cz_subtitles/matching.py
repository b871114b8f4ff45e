"""Release-tag based subtitle matching against the playing video."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Sequence

from .search import SubtitleRecord
from .tags import CODEC_TAGS, RESOLUTION_TAGS, SOURCE_TAGS, extract_tags, extract_tags_from, normalize

log = logging.getLogger("cz_subtitles.matching")

W_RESOLUTION = 20
W_SOURCE = 15
W_CODEC = 5
CLOSE_SCORE = 10  # scores this close are ordered by download count

MIN_WORD_OVERLAP = 0.6
_IGNORED_WORDS = {"mkv", "mp4", "avi", "m4v", "ts", "www", "com", "org"}

# Static quality ladder used when nothing is known about the playing file.
QUALITY_TABLE = {
    "2160p": 110,
    "remux": 105,
    "bluray": 100,
    "1080p": 90,
    "web-dl": 85,
    "webrip": 80,
    "hdtv": 75,
    "720p": 72,
    "dvdrip": 70,
    "dvdscr": 65,
    "480p": 50,
    "cam": 25,
    "ts": 20,
}

GIB = 1024 ** 3
# (minimum GiB, source) for files whose name gives no source.
SIZE_SOURCE_LADDER = (
    (50, "remux"),
    (25, "bluray"),
    (10, "web-dl"),
    (4, "webrip"),
    (2, "hdtv"),
)


@dataclass(frozen=True)
class TorrentCandidate:
    """A file from the user's torrent history that may be the one playing."""

    filename: str
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class VideoContext:
    filename: Optional[str] = None
    size_bytes: Optional[int] = None
    tags: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_filename(cls, filename: Optional[str], size_bytes: Optional[int] = None) -> "VideoContext":
        return cls(filename=filename or None, size_bytes=size_bytes, tags=extract_tags(filename))

    def enrich(self, candidates: Iterable[TorrentCandidate]) -> "VideoContext":
        """Union in the tags of the history entry that best matches this video.

        The history usually carries the full release name while the player may
        only report a shortened one. Enrichment never removes tags.
        """
        best = best_candidate(self.filename, self.size_bytes, candidates)
        if best is None:
            return self
        extra = extract_tags(best.filename)
        if extra <= self.tags:
            return self
        log.debug("Enriched video tags from %s: +%s", best.filename, sorted(extra - self.tags))
        return VideoContext(filename=self.filename, size_bytes=self.size_bytes, tags=self.tags | extra)

    def with_size_estimate(self) -> "VideoContext":
        """Add a source tag guessed from the file size when nothing names the source."""
        if not self.size_bytes or self.tags & SOURCE_TAGS:
            return self
        guessed = estimate_source(self.size_bytes)
        log.debug("No source tag for %s; %d bytes suggests %s", self.filename, self.size_bytes, guessed)
        return VideoContext(filename=self.filename, size_bytes=self.size_bytes, tags=self.tags | {guessed})


def estimate_source(size_bytes: int) -> str:
    size_gb = size_bytes / GIB
    for threshold, source in SIZE_SOURCE_LADDER:
        if size_gb >= threshold:
            return source
    return "dvdrip"


def _words(text: Optional[str]) -> set:
    return {w for w in normalize(text or "").split() if len(w) > 1 and w not in _IGNORED_WORDS}


def word_overlap(playing: Optional[str], candidate: Optional[str]) -> float:
    playing_words = _words(playing)
    if not playing_words:
        return 0.0
    return len(playing_words & _words(candidate)) / len(playing_words)


def best_candidate(
    filename: Optional[str],
    size_bytes: Optional[int],
    candidates: Iterable[TorrentCandidate],
) -> Optional[TorrentCandidate]:
    best: Optional[TorrentCandidate] = None
    best_overlap = 0.0
    for candidate in candidates:
        if size_bytes and candidate.size_bytes and candidate.size_bytes == size_bytes:
            return candidate
        overlap = word_overlap(filename, candidate.filename)
        if overlap > best_overlap:
            best, best_overlap = candidate, overlap
    if best_overlap >= MIN_WORD_OVERLAP:
        return best
    return None


@dataclass(frozen=True)
class MatchResult:
    record: SubtitleRecord
    score: int
    tags: FrozenSet[str]


def record_tags(record: SubtitleRecord) -> FrozenSet[str]:
    return extract_tags_from((record.title, record.version))


def compatibility_score(subtitle_tags: FrozenSet[str], video_tags: FrozenSet[str]) -> int:
    common = subtitle_tags & video_tags
    return (
        W_RESOLUTION * len(common & RESOLUTION_TAGS)
        + W_SOURCE * len(common & SOURCE_TAGS)
        + W_CODEC * len(common & CODEC_TAGS)
    )


def quality_score(subtitle_tags: FrozenSet[str]) -> int:
    return max((QUALITY_TABLE.get(tag, 0) for tag in subtitle_tags), default=0)


class MatchScorer:
    """Rank subtitle records against a video context."""

    def __init__(self, close_threshold: int = CLOSE_SCORE):
        self.close_threshold = close_threshold

    def score(self, subtitle_tags: FrozenSet[str], context: VideoContext) -> int:
        if context.tags:
            return compatibility_score(subtitle_tags, context.tags)
        return quality_score(subtitle_tags)

    def rank(self, records: Iterable[SubtitleRecord], context: VideoContext) -> List[MatchResult]:
        scored = []
        for record in records:
            tags = record_tags(record)
            scored.append(MatchResult(record=record, score=self.score(tags, context), tags=tags))
        ranked = self._order(scored)
        for idx, result in enumerate(ranked[:3], start=1):
            log.debug("%d. %s [%s] score=%d", idx, result.record.title, result.record.version or "", result.score)
        return ranked

    def _order(self, results: Sequence[MatchResult]) -> List[MatchResult]:
        by_score = sorted(results, key=lambda r: r.score, reverse=True)
        ordered: List[MatchResult] = []
        start = 0
        while start < len(by_score):
            lead = by_score[start].score
            end = start
            while end < len(by_score) and lead - by_score[end].score <= self.close_threshold:
                end += 1
            group = by_score[start:end]
            group.sort(key=lambda r: r.record.downloads, reverse=True)
            ordered.extend(group)
            start = end
        return ordered


__all__ = ["MatchResult", "MatchScorer", "TorrentCandidate", "VideoContext", "estimate_source"]
