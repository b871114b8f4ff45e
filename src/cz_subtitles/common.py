# -*- coding: utf-8 -*-
"""Shared helpers: logging setup and browser-like request headers.

Adds optional structured JSON logging with per-request correlation ids.
"""

from __future__ import annotations

import contextvars
import datetime
import json
import logging
import sys
from typing import Dict

from .settings import settings

# Per-request context for correlation
REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload = {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = REQUEST_ID.get("")
        if rid:
            payload["rid"] = rid
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    """Prefix text log lines with the current request id, when there is one."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = REQUEST_ID.get("")
        record.rid = f"[rid={rid}] " if rid else ""
        return True


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    use_json = settings.json_logs if json_logs is None else json_logs

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(rid)s%(message)s", datefmt="%H:%M:%S")
        )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level_name)
    logging.getLogger("cz_subtitles").setLevel(level_name)
    for noisy in ("httpx", "httpcore", "charset_normalizer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def browser_headers(referer: str | None = None) -> Dict[str, str]:
    """Return realistic browser-like headers."""
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "cs,en;q=0.9",
        "Accept-Encoding": "gzip, deflate",
    }
    if referer:
        headers["Referer"] = referer
    return headers
