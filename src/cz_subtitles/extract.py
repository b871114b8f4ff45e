from __future__ import annotations

import codecs
import gzip
import io
import logging
import os
import zipfile
from dataclasses import dataclass
from typing import List

from charset_normalizer import from_bytes

log = logging.getLogger("cz_subtitles.extract")

# Preference order: earlier extensions are returned first.
SUBTITLE_EXTENSIONS = (".srt", ".sub", ".ass", ".ssa", ".smi", ".txt")

# Historical code page of the site's uploads (Czech/Slovak Windows).
FALLBACK_CODEPAGE = "cp1250"
# Share of C1 control characters above which "valid" UTF-8 is treated as mojibake.
C1_DENSITY_LIMIT = 0.001


class SubtitleExtractionError(RuntimeError):
    """Raised when a downloaded archive does not contain a usable subtitle."""


@dataclass(frozen=True)
class ArchiveEntry:
    filename: str
    content: bytes


def _extension_rank(name: str) -> int:
    ext = os.path.splitext(name)[1].lower()
    try:
        return SUBTITLE_EXTENSIONS.index(ext)
    except ValueError:
        return len(SUBTITLE_EXTENSIONS)


def extract_subtitles(data: bytes, fallback_name: str = "subtitle.srt") -> List[ArchiveEntry]:
    """Return the subtitle files of a zip archive, best extension first.

    Bytes that are not a zip container are returned untouched as a single
    entry named ``fallback_name``; some downloads are bare subtitle files.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        log.info("Download is not a zip archive (%d bytes); returning raw content", len(data))
        return [ArchiveEntry(filename=fallback_name, content=data)]

    with archive:
        names = [
            info.filename
            for info in archive.infolist()
            if not info.is_dir() and _extension_rank(info.filename) < len(SUBTITLE_EXTENSIONS)
        ]
        if not names:
            raise SubtitleExtractionError("Archive does not contain subtitle files")
        names.sort(key=_extension_rank)
        return [ArchiveEntry(filename=os.path.basename(name), content=archive.read(name)) for name in names]


def _looks_like_mojibake(text: str) -> bool:
    if "�" in text:
        return True
    if not text:
        return False
    c1 = sum(1 for ch in text if "\x80" <= ch <= "\x9f")
    return c1 / len(text) > C1_DENSITY_LIMIT


def normalize_encoding(data: bytes) -> str:
    """Decode subtitle bytes into text.

    BOMs win; then strict UTF-8; anything that fails or decodes into
    mojibake is re-read with the regional code page.
    """
    if data.startswith(codecs.BOM_UTF8):
        return data[len(codecs.BOM_UTF8):].decode("utf-8", errors="replace")
    if data.startswith(codecs.BOM_UTF16_LE):
        return data[len(codecs.BOM_UTF16_LE):].decode("utf-16-le", errors="replace")

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = None
    if text is not None and not _looks_like_mojibake(text):
        return text

    try:
        return data.decode(FALLBACK_CODEPAGE)
    except UnicodeDecodeError:
        match = from_bytes(data).best()
        if match is not None:
            log.debug("Falling back to detected encoding %s", match.encoding)
            return str(match)
        return data.decode(FALLBACK_CODEPAGE, errors="replace")


def decode_body(content: bytes) -> str:
    """Turn an HTML response body into text.

    httpx already undoes the declared Content-Encoding; a gzip stream that
    slipped through without the header is unpacked here.
    """
    if content[:2] == b"\x1f\x8b":
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError) as exc:
            log.debug("Body looked gzipped but could not be inflated: %s", exc)
    return normalize_encoding(content)
