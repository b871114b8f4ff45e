"""Full-text search on titulky.com and tolerant parsing of the result table."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup, Tag

from .extract import decode_body
from .session import CAPTCHA_RE, LOGIN_FORM_RE, AuthSession

log = logging.getLogger("cz_subtitles.search")

# Detail pages look like "/Movie-Name-123456.htm"; the trailing number is the subtitle id.
DETAIL_LINK_RE = re.compile(r"(?:^|/)([^/?#]*?-(\d+))\.htm(?:$|[?#])", re.IGNORECASE)
ROW_CLASS_RE = re.compile(r"^r")

LANGUAGE_CODES = {
    "CZ": "cze",
    "SK": "slk",
    "EN": "eng",
    "DE": "ger",
    "PL": "pol",
    "HU": "hun",
    "FR": "fre",
    "ES": "spa",
    "IT": "ita",
    "RU": "rus",
}

_DATE_RE = re.compile(r"^\d{1,2}\.\s?\d{1,2}\.\s?\d{2,4}$")
_INT_RE = re.compile(r"^\d{1,3}(?:[ \xa0]?\d{3})*$")
_DECIMAL_RE = re.compile(r"^(\d+[.,]\d+)\s*(?:[kKmM]i?B)?$")
_UNIT_SIZE_RE = re.compile(r"^(\d+)\s*[kKmM]i?B$")
_FLAG_ALT_RE = re.compile(r"^[A-Za-z]{2}$")
_USER_LINK_RE = re.compile(r"UserDetail|Uzivatel|user", re.IGNORECASE)


@dataclass(frozen=True)
class SubtitleRecord:
    id: str
    link_file: str
    title: str
    version: Optional[str] = None
    language: str = "cze"
    downloads: int = 0
    size: Optional[float] = None
    uploader: Optional[str] = None
    year: Optional[int] = None


def _cell_text(cell: Tag) -> str:
    return cell.get_text(" ", strip=True).replace("\xa0", " ").strip()


def _row_language(row: Tag) -> Optional[Tag]:
    for img in row.find_all("img"):
        alt = (img.get("alt") or "").strip()
        if _FLAG_ALT_RE.match(alt):
            return img
    return None


def _version(row: Tag, link: Tag) -> Optional[str]:
    candidates = [link, *row.find_all(attrs={"title": True})]
    for node in candidates:
        if node.name == "img":
            continue
        value = (node.get("title") or "").strip()
        if value:
            return value
    return None


def _as_int(text: str) -> Optional[int]:
    if _INT_RE.match(text):
        return int(re.sub(r"\D", "", text))
    return None


def _as_size(text: str) -> Optional[float]:
    match = _DECIMAL_RE.match(text) or _UNIT_SIZE_RE.match(text)
    if match:
        return float(match.group(1).replace(",", "."))
    return None


def parse_row(row: Tag) -> Optional[SubtitleRecord]:
    """Build a record from one result row, or None when the row is not a subtitle.

    Columns are recognised by what they hold rather than by position: the
    flag image anchors the row, the download count is the last plain number
    before it, the size the decimal after it.
    """
    link = row.find("a", href=DETAIL_LINK_RE)
    if link is None:
        return None
    match = DETAIL_LINK_RE.search(link["href"])
    if match is None or not match.group(1):
        return None
    link_file, subtitle_id = match.group(1), match.group(2)

    flag = _row_language(row)
    if flag is None:
        return None
    language = LANGUAGE_CODES.get(flag["alt"].strip().upper())
    if language is None:
        log.debug("Skipping %s: unsupported language %r", link_file, flag["alt"])
        return None

    title = link.get_text(" ", strip=True) or link_file
    cells = row.find_all("td", recursive=False) or row.find_all("td")
    link_cell = link.find_parent("td")
    flag_cell = flag.find_parent("td")

    before: List[int] = []
    after: List[int] = []
    size: Optional[float] = None
    uploader: Optional[str] = None
    seen_flag = False
    for cell in cells:
        if cell is flag_cell:
            seen_flag = True
            continue
        if cell is link_cell:
            continue
        user = cell.find("a", href=_USER_LINK_RE)
        if user is not None and uploader is None:
            uploader = user.get_text(strip=True) or None
            continue
        text = _cell_text(cell)
        if not text or _DATE_RE.match(text):
            continue
        number = _as_int(text)
        if number is not None:
            (after if seen_flag else before).append(number)
            continue
        if seen_flag and size is None:
            size = _as_size(text)

    year = None
    if len(before) >= 2 and 1900 <= before[-2] <= 2099:
        year = before[-2]
    downloads = before[-1] if before else 0
    if size is None and len(after) >= 2:
        size = float(after[-1])

    if uploader is None and cells:
        # Some layouts put the uploader as plain text in the last column.
        tail = cells[-1]
        if tail is not flag_cell and tail is not link_cell and tail.find("a") is not None:
            uploader = tail.find("a").get_text(strip=True) or None

    return SubtitleRecord(
        id=subtitle_id,
        link_file=link_file,
        title=title,
        version=_version(row, link),
        language=language,
        downloads=downloads,
        size=size,
        uploader=uploader,
        year=year,
    )


def _result_rows(soup: BeautifulSoup) -> List[Tag]:
    rows = soup.find_all("tr", class_=ROW_CLASS_RE)
    if rows:
        return rows
    return [tr for tr in soup.find_all("tr") if tr.find("a", href=DETAIL_LINK_RE) is not None]


def parse_search_results(html: str) -> List[SubtitleRecord]:
    soup = BeautifulSoup(html or "", "html.parser")
    records: List[SubtitleRecord] = []
    seen = set()
    for row in _result_rows(soup):
        try:
            record = parse_row(row)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as exc:
            log.debug("Skipping unparseable result row: %s", exc)
            continue
        if record is None or record.id in seen:
            continue
        seen.add(record.id)
        records.append(record)
    return records


class SearchEngine:
    def __init__(self, session: AuthSession):
        self.session = session

    async def search(self, title_variants: Iterable[str]) -> List[SubtitleRecord]:
        """Query each title variant in order; the first non-empty result wins."""
        tried = set()
        for title in title_variants:
            title = (title or "").strip()
            if not title or title.lower() in tried:
                continue
            tried.add(title.lower())
            if self.session.captcha_active:
                log.info("Captcha flag set; skipping search for %r", title)
                return []
            records = await self.query(title)
            if records:
                return records
        return []

    async def query(self, title: str) -> List[SubtitleRecord]:
        response = await self.session.request(
            "GET",
            self.session.url("/index.php"),
            params={"Fulltext": title, "FindUser": ""},
            referer=self.session.url("/"),
        )
        html = decode_body(response.content)
        if CAPTCHA_RE.search(html):
            self.session.flag_captcha()
            return []
        records = parse_search_results(html)
        if not records and LOGIN_FORM_RE.search(html):
            self.session.mark_logged_out()
        log.info("Titulky search %r -> %d results", title, len(records))
        return records


__all__ = ["SearchEngine", "SubtitleRecord", "parse_row", "parse_search_results"]
