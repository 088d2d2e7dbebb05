#!/usr/bin/env python3
import asyncio
import json
import logging
import os
import re

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from engine.cache import ListingCache
from engine.config import load_app_config
from engine.errors import (
    AuthenticationRequiredError,
    ClientCancelledError,
    MalformedInputError,
    ProbeUnavailableError,
    TranscodeFailedError,
    TubefetchError,
)
from engine.json_utils import json_sanity_check, safe_json
from engine.logging_utils import log_event, setup_logging
from engine.paths import build_engine_paths, ensure_dir
from engine.probe import make_probe, run_probe
from engine.runtime import get_runtime_info
from engine.transcode import DOWNLOAD_FAILED_MESSAGE, YtDlpTranscoder, remove_temp_dir
from input.video_ref import parse_video_id
from media.formats import format_ids
from media.pairing import build_format_listing
from media.selector import (
    looks_like_selector,
    normalize_kind,
    resolve_download_selector,
    sanitize_requested_selector,
)

APP_NAME = "Tubefetch API"
LISTING_FAILED_MESSAGE = "Failed to retrieve video info."
DISCONNECT_POLL_SEC = 0.5
DEFAULT_EXTENSION = "mp4"
MAX_TITLE_LENGTH = 128
_TRUST_PROXY = os.environ.get("TUBEFETCH_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "m4a": "audio/mp4",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/ogg",
}

_EXTENSION_STRIP_RE = re.compile(r"[^a-z0-9]")
_TITLE_STRIP_RE = re.compile(r"[^a-z0-9_\- ]", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


class TempDirStreamingResponse(StreamingResponse):
    """Streams a finished download and removes its temp dir afterwards.

    Removal runs in ``finally`` so a client that disconnects mid-stream
    still leaves nothing behind.
    """

    def __init__(self, path, temp_dir, **kwargs):
        self.temp_dir = temp_dir
        super().__init__(_iter_file(path), **kwargs)

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            remove_temp_dir(self.temp_dir)
            logging.info("Download temp dir removed: %s", self.temp_dir)


app = FastAPI(
    title=APP_NAME,
    description="Tubefetch API for listing and downloading YouTube stream variants.",
    default_response_class=SafeJSONResponse,
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.on_event("startup")
async def startup():
    app.state.paths = build_engine_paths()
    ensure_dir(app.state.paths.log_dir)
    ensure_dir(app.state.paths.temp_downloads_dir)
    app.state.log_path = setup_logging(app.state.paths.log_dir)
    json_sanity_check()
    config = load_app_config()
    if not config.temp_root:
        config = config.with_overrides(temp_root=app.state.paths.temp_downloads_dir)
    app.state.config = config
    app.state.probe = make_probe(config)
    app.state.transcoder = YtDlpTranscoder(config)
    app.state.listing_cache = ListingCache(config.listing_cache_ttl_sec)
    logging.info(
        "Tubefetch started: probe=%s max_height=%s listing_cache_ttl=%s",
        config.probe_provider,
        config.max_height,
        config.listing_cache_ttl_sec,
    )


@app.exception_handler(TubefetchError)
async def tubefetch_error_handler(request: Request, exc: TubefetchError):
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    log_event(
        level,
        "request_failed",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        error=str(exc),
        detail=exc.detail,
    )
    return SafeJSONResponse({"error": str(exc), "code": exc.code}, status_code=exc.status_code)


def _iter_file(path, chunk_size=1024 * 1024):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def sanitize_extension(value) -> str:
    text = str(value or "").strip().lower()
    return _EXTENSION_STRIP_RE.sub("", text) or DEFAULT_EXTENSION


def sanitize_title(title, fallback=None) -> str:
    """Filename stem: ``[A-Za-z0-9_- ]`` only, whitespace to ``_``, at most 128 chars."""
    raw = str(title).strip() if title is not None else ""
    if not raw:
        raw = str(fallback or "").strip()
    cleaned = _WHITESPACE_RE.sub("_", _TITLE_STRIP_RE.sub("", raw))
    return cleaned[:MAX_TITLE_LENGTH] or "video"


def content_type_for(extension: str) -> str:
    return CONTENT_TYPES.get(extension, "application/octet-stream")


def _config():
    return app.state.config


async def _probe(video_id):
    return await run_probe(app.state.probe, video_id, _config().probe_timeout_sec)


async def _listing_for(video_ref):
    video_id = parse_video_id(video_ref)
    cache = getattr(app.state, "listing_cache", None)
    if cache is not None:
        cached = cache.get(video_id)
        if cached is not None:
            return cached
    try:
        info = await _probe(video_id)
    except ProbeUnavailableError as exc:
        raise ProbeUnavailableError(LISTING_FAILED_MESSAGE, detail=exc.detail or str(exc)) from exc
    listing = build_format_listing(info, video_id)
    log_event(
        logging.INFO,
        "format_listing_built",
        video_id=video_id,
        video_options=len(listing["videoStreams"]),
        audio_options=len(listing["audioStreams"]),
    )
    if cache is not None:
        cache.set(video_id, listing)
    return listing


async def _fresh_format_ids(video_id):
    """Format ids from a fresh probe; ``None`` when the probe fails for non-auth reasons."""
    try:
        info = await _probe(video_id)
    except ProbeUnavailableError as exc:
        log_event(logging.WARNING, "selector_probe_failed", video_id=video_id, error=str(exc))
        return None
    return format_ids(info)


async def _run_until_disconnect(request: Request, coro):
    """Await ``coro`` while polling for client disconnect; cancel it if the client leaves."""
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SEC)
            if done:
                return task.result()
            if await request.is_disconnected():
                break
    finally:
        if not task.done():
            task.cancel()
    try:
        result = await task
    except asyncio.CancelledError:
        result = None
    if result is not None:
        remove_temp_dir(result.temp_dir)
    raise ClientCancelledError("client disconnected during download")


@app.get("/streams/{video_ref:path}")
async def api_streams(video_ref: str):
    return await _listing_for(video_ref)


@app.get("/api/youtube-download")
async def api_youtube_download(url: str | None = Query(None)):
    if not url or not url.strip():
        raise MalformedInputError("Missing url query parameter.")
    return await _listing_for(url)


@app.api_route("/download", methods=["GET", "HEAD"])
async def download(
    request: Request,
    id: str | None = Query(None),
    format: str | None = Query(None),
    type: str | None = Query("video"),
    ext: str | None = Query(None),
    title: str | None = Query(None),
    maxHeight: str | None = Query(None),
    minHeight: str | None = Query(None),
):
    if request.method == "HEAD":
        return Response(status_code=200)
    if not id or not id.strip():
        raise MalformedInputError("Missing id query parameter.")
    video_id = parse_video_id(id)
    config = _config()
    kind = normalize_kind(type)
    extension = sanitize_extension(ext)
    filename = f"{sanitize_title(title, video_id)}.{extension}"

    requested = sanitize_requested_selector(format)
    available_ids = None
    if looks_like_selector(requested):
        available_ids = await _fresh_format_ids(video_id)
    resolved = resolve_download_selector(
        requested,
        kind=kind,
        available_ids=available_ids,
        max_height=maxHeight or config.max_height,
        min_height=minHeight or config.min_height,
    )
    log_event(
        logging.INFO,
        "download_requested",
        video_id=video_id,
        kind=kind,
        extension=extension,
        selector=resolved.format,
        sort=resolved.sort,
        source=resolved.source,
        stale=resolved.stale,
    )

    transcoder = app.state.transcoder
    try:
        result = await _run_until_disconnect(
            request,
            transcoder.download_video(
                video_id,
                selector=resolved.format,
                sort=resolved.sort,
                kind=kind,
                extension=extension,
            ),
        )
    except ClientCancelledError:
        logging.info("Client disconnected; download cancelled video_id=%s", video_id)
        return Response(status_code=ClientCancelledError.status_code)
    except AuthenticationRequiredError:
        logging.warning("yt-dlp run requires authentication video_id=%s", video_id)
        raise

    if not result.path or not os.path.isfile(result.path):
        remove_temp_dir(result.temp_dir)
        raise TranscodeFailedError(DOWNLOAD_FAILED_MESSAGE, detail="download produced no file")

    headers = {"Content-Disposition": f'inline; filename="{filename}"'}
    try:
        headers["Content-Length"] = str(os.path.getsize(result.path))
    except OSError:
        pass
    return TempDirStreamingResponse(
        result.path,
        result.temp_dir,
        media_type=content_type_for(extension),
        headers=headers,
    )


@app.get("/api/version")
async def api_version():
    return get_runtime_info()


@app.get("/api/health")
async def api_health():
    return {"status": "ok"}


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value.strip() if value and value.strip() else default


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("TUBEFETCH_HOST", "127.0.0.1")
    port = int(_env_or_default("TUBEFETCH_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
