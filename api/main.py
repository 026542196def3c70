#!/usr/bin/env python3
import asyncio
import json
import logging
import os

import anyio
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from engine.config import build_settings, load_config
from engine.download_service import DownloadService
from engine.errors import ConversionError, ErrorKind, InvalidInputError, TunecacheError
from engine.fingerprint import split_artifact_filename
from engine.json_utils import safe_json
from engine.paths import build_engine_paths, ensure_dir, resolve_config_path
from engine.runtime import get_runtime_info
from media.artifact_store import LocalArtifactStore, content_type_for

APP_NAME = "tunecache"
_TRUST_PROXY = os.environ.get("TUNECACHE_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}
STILL_PROCESSING_MESSAGE = "The track is still being processed. Please retry shortly."


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "tunecache.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def _load_settings():
    try:
        config_path = resolve_config_path(os.environ.get("TUNECACHE_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        config_path = resolve_config_path(None)
    config = {}
    if os.path.exists(config_path):
        config = load_config(config_path)
        logging.info("Loaded config from %s", config_path)
    return build_settings(config)


SETTINGS = _load_settings()


class DownloadRequest(BaseModel):
    url: str | None = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title=APP_NAME,
    description="Fetch, convert and serve audio tracks with request coalescing.",
    default_response_class=SafeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.allowed_origins),
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    allow_credentials=True,
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.on_event("startup")
async def startup():
    if getattr(app.state, "download_service", None) is not None:
        return
    settings = getattr(app.state, "settings", None) or SETTINGS
    paths = build_engine_paths()
    _setup_logging(paths.log_dir)
    app.state.settings = settings
    app.state.paths = paths
    app.state.download_service = DownloadService.build(settings, paths)
    status = app.state.download_service.status()
    logging.info(
        "Startup complete: store=%s degraded=%s search_backend=%s audio_dir=%s",
        status["store"],
        status["degraded"],
        status["search_backend"],
        paths.audio_dir,
    )
    runtime = get_runtime_info()
    if not runtime["transcoder_available"]:
        logging.error("ffmpeg/ffprobe not found on PATH; conversions will fail (operator_alert)")


@app.on_event("shutdown")
async def shutdown():
    service = getattr(app.state, "download_service", None)
    if service is not None:
        await anyio.to_thread.run_sync(service.shutdown)
    logging.shutdown()


def _service() -> DownloadService:
    return app.state.download_service


def _settings():
    return getattr(app.state, "settings", None) or SETTINGS


def _error_response(exc: TunecacheError):
    payload = exc.to_payload(include_details=not _settings().hide_details)
    return SafeJSONResponse(payload, status_code=exc.status_code)


def _absolute_url(request: Request, uri: str) -> str:
    if uri.startswith(("http://", "https://")):
        return uri
    base = _settings().public_base_url or str(request.base_url).rstrip("/")
    return f"{base}{uri}"


def _download_payload(request: Request, result):
    if result.cached:
        message = "Audio already processed and available!"
    else:
        message = "Audio downloaded and converted successfully!"
    if result.metadata_degraded:
        message = f"{message.rstrip('!')}, but metadata could not be fetched."
    return {
        "success": True,
        "message": message,
        "audioUrl": _absolute_url(request, result.artifact.location_uri),
        "title": result.metadata.title,
        "artist": result.metadata.artist,
        "thumbnail": result.metadata.thumbnail_url,
        "fingerprint": result.artifact.fingerprint,
        "cached": result.cached,
    }


@app.get("/", response_class=PlainTextResponse)
async def root():
    return "tunecache backend is running."


@app.get("/health")
async def health():
    service = _service()
    status = service.status()
    return {
        "status": "degraded" if status["degraded"] else "ok",
        **status,
        "runtime": get_runtime_info(),
    }


@app.get("/api/jobs")
async def list_jobs():
    return {"jobs": _service().ledger.snapshot()}


@app.get("/search")
async def search(q: str | None = Query(None)):
    service = _service()
    logging.info("Received search request for %r", q)
    try:
        results, from_cache = await anyio.to_thread.run_sync(service.search, q)
    except TunecacheError as exc:
        logging.warning("Search failed for %r: kind=%s details=%s", q, exc.kind.value, exc.details)
        return _error_response(exc)
    payload = {"success": True, "results": [item.to_search_result() for item in results]}
    if not results:
        payload["message"] = "No relevant tracks found. Try a more specific query."
    elif from_cache:
        payload["message"] = "Results from cache."
    return payload


async def _read_download_request(request: Request) -> DownloadRequest:
    raw = await request.body()
    if not raw.strip():
        return DownloadRequest()
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise InvalidInputError("Request body must be valid JSON.") from exc
    if data is None:
        return DownloadRequest()
    try:
        return DownloadRequest.model_validate(data)
    except ValidationError as exc:
        raise InvalidInputError('Request body must be a JSON object with a string "url".') from exc


@app.post("/download")
@app.post("/download-mp3")
async def download(request: Request):
    service = _service()
    try:
        payload = await _read_download_request(request)
        ticket = service.request(payload.url)
    except TunecacheError as exc:
        return _error_response(exc)
    logging.info("Download request %s role=%s fingerprint=%s", ticket.locator, ticket.role.value, ticket.fingerprint[:12])
    try:
        result = await asyncio.wait_for(
            asyncio.wrap_future(ticket.waiter),
            timeout=_settings().request_timeout_seconds,
        )
    except asyncio.TimeoutError:
        # The conversion keeps running and will populate the store.
        service.abandon(ticket)
        return _error_response(
            ConversionError(ErrorKind.TIMEOUT, STILL_PROCESSING_MESSAGE, fingerprint=ticket.fingerprint)
        )
    except TunecacheError as exc:
        return _error_response(exc)
    return _download_payload(request, result)


@app.get("/audio/{filename}")
async def serve_audio(filename: str):
    parts = split_artifact_filename(filename)
    if parts is None or parts[1] != _settings().audio_format:
        return SafeJSONResponse({"success": False, "message": "Not found."}, status_code=404)
    store = _service().store
    if not await anyio.to_thread.run_sync(store.exists, filename):
        return SafeJSONResponse({"success": False, "message": "Not found."}, status_code=404)
    media_type = content_type_for(filename)
    if isinstance(store, LocalArtifactStore):
        return FileResponse(store.path_for(filename), media_type=media_type)
    return StreamingResponse(store.read(filename), media_type=media_type)


def main():
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "10000")),
    )


if __name__ == "__main__":
    main()
