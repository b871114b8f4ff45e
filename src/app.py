from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, quote, unquote

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from cz_subtitles.cache import MemoryBlobCache
from cz_subtitles.client import SessionPool, TitulkyClient
from cz_subtitles.common import REQUEST_ID, configure_logging
from cz_subtitles.errors import BadCredentials, CaptchaRequired, FailureKind, Ok, SessionError
from cz_subtitles.matching import VideoContext
from cz_subtitles.metadata import resolve_media
from cz_subtitles.realdebrid import fetch_torrent_history
from cz_subtitles.settings import settings

log = logging.getLogger("cz_subtitles.app")

SESSION_POOL = SessionPool()
BLOB_CACHE = MemoryBlobCache(ttl=settings.blob_cache_ttl)

REQ_LATENCY = Histogram("titulky_request_seconds", "Request latency seconds", ["route"])  # noqa: N816
SEARCH_COUNT = Counter("titulky_search_total", "Search requests", ["media_type"])  # noqa: N816
DOWNLOAD_COUNT = Counter("titulky_download_total", "Subtitle downloads", ["outcome"])  # noqa: N816
CAPTCHA_COUNT = Counter("titulky_captcha_total", "Requests answered with the captcha notice", ["route"])  # noqa: N816

CAPTCHA_NOTICE = (
    "1\n"
    "00:00:01,000 --> 00:00:15,000\n"
    "Titulky.com vyžaduje opsání captcha kódu.\n"
    "Přihlaste se na www.titulky.com a zkuste to znovu za {minutes} min.\n"
    "\n"
    "2\n"
    "00:00:15,500 --> 00:00:30,000\n"
    "Titulky.com asks for a captcha. Solve it on the website\n"
    "and try again in {minutes} min.\n"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    log.info("Titulky addon %s started", settings.addon_version)
    yield
    await SESSION_POOL.aclose()
    log.info("Shutdown")


# ---------------------------------------------------------------------
# App + middleware
# ---------------------------------------------------------------------
app = FastAPI(title="Titulky.com subtitles for Stremio", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    rid = incoming or uuid.uuid4().hex[:16]
    token = REQUEST_ID.set(rid)
    try:
        response = await call_next(request)
    finally:
        REQUEST_ID.reset(token)
    response.headers["X-Request-ID"] = rid
    return response


# ---------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------
MANIFEST = {
    "id": "com.titulky.subtitles",
    "version": settings.addon_version,
    "name": "Titulky.com",
    "description": "Czech and Slovak subtitles from titulky.com, ranked for the release you are playing",
    "logo": "https://www.titulky.com/favicon.ico",
    "catalogs": [],
    "resources": [
        {
            "name": "subtitles",
            "types": ["movie", "series"],
            "idPrefixes": ["tt"],
            "extra": [{"name": "filename"}, {"name": "videoSize"}, {"name": "videoHash"}],
        },
    ],
    "types": ["movie", "series"],
    "idPrefixes": ["tt"],
    "behaviorHints": {"configurable": False, "configurationRequired": False},
}


@app.get("/manifest.json")
async def manifest() -> JSONResponse:
    return JSONResponse(MANIFEST)


@app.get("/")
async def index() -> JSONResponse:
    return JSONResponse({"status": "ok", "manifest": "/manifest.json", "name": MANIFEST["name"]})


@app.get("/healthz")
async def healthz() -> JSONResponse:
    return JSONResponse({"status": "ok", "version": MANIFEST["version"]})


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
async def get_client() -> TitulkyClient:
    session = await SESSION_POOL.get(settings.username, settings.password)
    return TitulkyClient(session, blob_cache=BLOB_CACHE)


def _public_base(request: Request) -> str:
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    base = str(request.base_url).rstrip("/")
    xf_proto = request.headers.get("x-forwarded-proto")
    if xf_proto and xf_proto.lower() == "https":
        base = base.replace("http://", "https://", 1)
    return base


def parse_extra(extra: Optional[str]) -> Dict[str, str]:
    """Decode the Stremio extra segment (``filename=...&videoSize=...``)."""
    if not extra:
        return {}
    return {key: value for key, value in parse_qsl(unquote(extra), keep_blank_values=False)}


def _as_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _captcha_minutes(retry_after: Optional[float]) -> int:
    remaining = retry_after or settings.captcha_cooldown_seconds
    return max(1, int(round(remaining / 60.0)))


def _session_error_response(exc: SessionError) -> JSONResponse:
    status = 401 if isinstance(exc, BadCredentials) else 502
    log.error("Titulky session failure: %s", exc)
    return JSONResponse({"subtitles": [], "error": str(exc), "kind": exc.kind.value}, status_code=status)


def _captcha_entry(base: str) -> Dict[str, str]:
    return {
        "id": "titulky-captcha",
        "url": f"{base}/captcha.srt",
        "lang": "cze",
        "label": "Titulky.com: captcha required, try again later",
    }


# ---------------------------------------------------------------------
# Subtitle search
# ---------------------------------------------------------------------
async def _build_context(extra: Dict[str, str], rd_token: Optional[str]) -> VideoContext:
    context = VideoContext.from_filename(extra.get("filename") or extra.get("videoName"), _as_int(extra.get("videoSize")))
    token = rd_token or settings.rd_token
    if token:
        context = context.enrich(await fetch_torrent_history(token))
    return context.with_size_estimate()


async def _subtitles_response(request: Request, media_type: str, item_id: str, extra: Optional[str]) -> JSONResponse:
    started = time.perf_counter()
    SEARCH_COUNT.labels(media_type=media_type).inc()
    try:
        return await _list_subtitles(request, media_type, item_id, extra)
    finally:
        REQ_LATENCY.labels(route="subtitles").observe(time.perf_counter() - started)


async def _list_subtitles(request: Request, media_type: str, item_id: str, extra: Optional[str]) -> JSONResponse:
    params: Dict[str, str] = {}
    rd_token: Optional[str] = None
    if extra and "=" in unquote(extra):
        params = parse_extra(extra)
    elif extra:
        rd_token = extra

    client = await get_client()
    base = _public_base(request)
    if client.captcha_active:
        CAPTCHA_COUNT.labels(route="subtitles").inc()
        return JSONResponse({"subtitles": [_captcha_entry(base)]})

    media = await resolve_media(media_type, unquote(item_id))
    if media is None:
        log.info("No metadata for %s %s", media_type, item_id)
        return JSONResponse({"subtitles": []})

    context = await _build_context(params, rd_token)
    try:
        ranked = await client.search(media.title_variants(), context)
    except SessionError as exc:
        return _session_error_response(exc)

    if not ranked and client.captcha_active:
        CAPTCHA_COUNT.labels(route="subtitles").inc()
        return JSONResponse({"subtitles": [_captcha_entry(base)]})

    items: List[Dict[str, str]] = []
    for subtitle in ranked[: settings.max_results]:
        items.append({
            "id": f"titulky-{subtitle.id}",
            "url": f"{base}/subtitle/{subtitle.id}/{quote(subtitle.link_file)}.srt",
            "lang": subtitle.language_code,
            "label": subtitle.display_label,
        })
    log.info("%s %s -> %d subtitles (%s)", media_type, item_id, len(items), media.name)
    return JSONResponse({"subtitles": items})


@app.get("/subtitles/{media_type}/{item_id}.json")
async def subtitles(media_type: str, item_id: str, request: Request) -> JSONResponse:
    return await _subtitles_response(request, media_type, item_id, None)


@app.get("/subtitles/{media_type}/{item_id}/{extra}.json")
async def subtitles_with_extra(media_type: str, item_id: str, extra: str, request: Request) -> JSONResponse:
    return await _subtitles_response(request, media_type, item_id, extra)


# ---------------------------------------------------------------------
# Subtitle download
# ---------------------------------------------------------------------
def _srt_response(text: str, filename: str) -> Response:
    headers = {
        "Content-Disposition": f'attachment; filename="{quote(filename)}"',
        "Access-Control-Allow-Origin": "*",
    }
    return Response(content=text.encode("utf-8"), media_type="text/plain; charset=utf-8", headers=headers)


def _captcha_srt(retry_after: Optional[float]) -> Response:
    return _srt_response(CAPTCHA_NOTICE.format(minutes=_captcha_minutes(retry_after)), "captcha.srt")


@app.exception_handler(CaptchaRequired)
async def captcha_required_handler(request: Request, exc: CaptchaRequired) -> Response:
    # Served as a playable subtitle so the player shows the reason.
    CAPTCHA_COUNT.labels(route="subtitle").inc()
    log.warning("Captcha required: %s", exc)
    return _captcha_srt(exc.retry_after)


@app.get("/captcha.srt")
async def captcha_notice() -> Response:
    client = await get_client()
    return _captcha_srt(client.session.captcha_retry_after())


@app.get("/subtitle/{subtitle_id}/{link_file}.srt")
async def serve_subtitle(subtitle_id: str, link_file: str) -> Response:
    started = time.perf_counter()
    try:
        return await _download_subtitle(subtitle_id, unquote(link_file))
    finally:
        REQ_LATENCY.labels(route="subtitle").observe(time.perf_counter() - started)


async def _download_subtitle(subtitle_id: str, link_file: str) -> Response:
    client = await get_client()
    try:
        outcome = await client.download(subtitle_id, link_file)
    except SessionError as exc:
        DOWNLOAD_COUNT.labels(outcome="error").inc()
        return _session_error_response(exc)

    if isinstance(outcome, Ok):
        DOWNLOAD_COUNT.labels(outcome="ok").inc()
        return _srt_response(outcome.value.content, outcome.value.filename)
    if outcome.kind is FailureKind.CAPTCHA_REQUIRED:
        DOWNLOAD_COUNT.labels(outcome="captcha").inc()
        raise CaptchaRequired(outcome.detail or "Captcha required", retry_after=client.session.captcha_retry_after())
    DOWNLOAD_COUNT.labels(outcome="not_found").inc()
    return JSONResponse({"error": "Subtitle not found", "detail": outcome.detail}, status_code=404)
