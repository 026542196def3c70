"""Track search and description through the yt-dlp command line."""

from __future__ import annotations

import json
import logging
import subprocess
import sys
from typing import Protocol
from urllib.parse import urlparse

from engine.errors import ErrorKind, MetadataError, metadata_error_from_diagnostic
from metadata.search_cache import SearchCache
from metadata.types import UNKNOWN_ARTIST, TrackMetadata, placeholder_metadata

logger = logging.getLogger(__name__)

_TRACK_ENTRY_TYPES = (None, "video", "url")


def _is_http_url(value):
    if not value or not isinstance(value, str):
        return False
    try:
        return urlparse(value).scheme in ("http", "https")
    except Exception:
        return False


def _run_extractor(argv, *, timeout):
    """Run the extractor and return ``(returncode, stdout, stderr)``.

    Raises:
        MetadataError: ``ToolMisconfigured`` when the executable is missing,
            ``Timeout`` when the process exceeds ``timeout`` seconds.
    """
    try:
        completed = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise MetadataError(
            ErrorKind.TOOL_MISCONFIGURED,
            details=f"extractor executable not found: {argv[0]}",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise MetadataError(
            ErrorKind.TIMEOUT,
            details=f"extractor timed out after {timeout}s",
        ) from exc
    return completed.returncode, completed.stdout or "", completed.stderr or ""


def _thumbnail_from_entry(entry):
    thumbnails = entry.get("thumbnails")
    if isinstance(thumbnails, list):
        for thumb in reversed(thumbnails):
            if isinstance(thumb, dict) and _is_http_url(thumb.get("url")):
                return thumb["url"]
    thumbnail = entry.get("thumbnail")
    return thumbnail if _is_http_url(thumbnail) else None


def _entry_url(entry):
    for key in ("webpage_url", "original_url", "url"):
        value = entry.get(key)
        if _is_http_url(value):
            return value
    return None


def metadata_from_entry(entry, *, fallback_url=None):
    return TrackMetadata(
        title=str(entry.get("title") or entry.get("track") or "Untitled"),
        artist=str(entry.get("uploader") or entry.get("channel") or entry.get("artist") or UNKNOWN_ARTIST),
        thumbnail_url=_thumbnail_from_entry(entry),
        source_url=_entry_url(entry) or fallback_url or "",
    )


class MetadataResolver(Protocol):
    source: str

    def search(self, query: str, limit: int = 10) -> list[TrackMetadata]:
        """Return matching tracks in extractor order."""

    def describe(self, locator: str) -> TrackMetadata:
        """Return metadata for a single source locator."""


class YtDlpMetadataResolver:
    source = ""
    search_prefix = ""
    flat_search = True
    host_markers: tuple[str, ...] = ()
    extractor_markers: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        command=None,
        user_agent=None,
        timeout_seconds=90.0,
        socket_timeout=60,
    ):
        self.command = tuple(command or (sys.executable, "-m", "yt_dlp"))
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.socket_timeout = socket_timeout

    def _common_args(self):
        args = ["--socket-timeout", str(int(self.socket_timeout))]
        if self.user_agent:
            args += ["--user-agent", self.user_agent]
        return args

    def build_search_argv(self, query, limit):
        argv = [*self.command, f"{self.search_prefix}{int(limit)}:{query}", "--dump-json", "--ignore-errors"]
        if self.flat_search:
            argv.append("--flat-playlist")
        return argv + self._common_args()

    def build_describe_argv(self, locator):
        # "--" keeps a locator from being parsed as an option.
        return [*self.command, "--dump-json", "--skip-download", "--no-playlist", *self._common_args(), "--", locator]

    def accepts(self, entry, url):
        entry_type = entry.get("_type")
        if entry_type not in _TRACK_ENTRY_TYPES:
            return False
        if not entry.get("title"):
            return False
        lowered = url.lower()
        extractor = str(entry.get("extractor_key") or entry.get("ie_key") or "").lower()
        if self.host_markers or self.extractor_markers:
            if not any(marker in lowered for marker in self.host_markers) and not any(
                marker in extractor for marker in self.extractor_markers
            ):
                return False
        return True

    def parse_search_output(self, stdout):
        results = []
        lines = [line for line in stdout.splitlines() if line.strip()]
        parsed_any = False
        for line in lines:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("Failed to parse a search result line: %s line=%r", exc, line[:200])
                continue
            parsed_any = True
            if not isinstance(entry, dict):
                continue
            url = _entry_url(entry)
            if not url or not self.accepts(entry, url):
                logger.debug(
                    "Skipped search result source=%s title=%r type=%r url=%r",
                    self.source,
                    entry.get("title"),
                    entry.get("_type"),
                    url,
                )
                continue
            results.append(metadata_from_entry(entry, fallback_url=url))
        if lines and not parsed_any:
            raise MetadataError(ErrorKind.PARSE_FAILURE, details=stdout[:2000])
        return results

    def search(self, query, limit=10):
        if not query:
            return []
        argv = self.build_search_argv(query, limit)
        logger.info("Searching source=%s query=%r", self.source, query)
        returncode, stdout, stderr = _run_extractor(argv, timeout=self.timeout_seconds)
        if returncode != 0 and not stdout.strip():
            logger.error("Search failed source=%s exit=%s stderr=%s", self.source, returncode, stderr.strip())
            raise metadata_error_from_diagnostic(stderr.strip() or f"extractor exited with code {returncode}")
        if stderr.strip():
            logger.warning("Search stderr source=%s (non-fatal): %s", self.source, stderr.strip())
        results = self.parse_search_output(stdout)
        logger.info("Search source=%s query=%r results=%d", self.source, query, len(results))
        return results

    def describe(self, locator):
        argv = self.build_describe_argv(locator)
        returncode, stdout, stderr = _run_extractor(argv, timeout=self.timeout_seconds)
        if returncode != 0:
            raise metadata_error_from_diagnostic(stderr.strip() or f"extractor exited with code {returncode}")
        # With --no-playlist the last printed object describes the requested track.
        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise MetadataError(ErrorKind.PARSE_FAILURE, details="extractor printed no metadata")
        try:
            entry = json.loads(lines[-1])
        except json.JSONDecodeError as exc:
            raise MetadataError(ErrorKind.PARSE_FAILURE, details=lines[-1][:2000]) from exc
        if not isinstance(entry, dict):
            raise MetadataError(ErrorKind.PARSE_FAILURE, details=lines[-1][:2000])
        return metadata_from_entry(entry, fallback_url=locator)


class SoundCloudResolver(YtDlpMetadataResolver):
    source = "soundcloud"
    search_prefix = "scsearch"
    # Flat SoundCloud search entries carry no titles.
    flat_search = False
    host_markers = ("soundcloud.com",)
    extractor_markers = ("soundcloud",)

    def accepts(self, entry, url):
        if "/sets/" in url.lower():
            return False
        return super().accepts(entry, url)


class YouTubeResolver(YtDlpMetadataResolver):
    source = "youtube"
    search_prefix = "ytsearch"
    flat_search = True
    host_markers = ("youtube.com", "youtu.be")
    extractor_markers = ("youtube",)

    def accepts(self, entry, url):
        # Live streams and channels come back without a duration.
        if not entry.get("duration"):
            return False
        return super().accepts(entry, url)


def default_resolvers():
    return {resolver.source: resolver for resolver in (SoundCloudResolver, YouTubeResolver)}


def build_resolver(settings):
    resolvers = default_resolvers()
    resolver_cls = resolvers.get(settings.search_backend)
    if resolver_cls is None:
        raise ValueError(f"unknown search backend: {settings.search_backend}")
    return resolver_cls(
        command=settings.ytdlp_command,
        user_agent=settings.user_agent,
        timeout_seconds=settings.metadata_timeout_seconds,
        socket_timeout=settings.metadata_socket_timeout_seconds,
    )


def describe_or_placeholder(resolver, locator, *, fingerprint=None, cache: SearchCache | None = None):
    """Describe ``locator``, degrading to placeholder metadata on any failure.

    Returns ``(metadata, degraded)``. A stored artifact is always served, so
    metadata problems are logged and never raised.
    """
    if cache is not None:
        cached = cache.get(locator)
        if cached is not SearchCache.MISS:
            return cached, False
    if resolver is None:
        return placeholder_metadata(locator, fingerprint), True
    try:
        metadata = resolver.describe(locator)
    except MetadataError as exc:
        logger.warning(
            "Metadata unavailable for %s (kind=%s); serving placeholder. details=%s",
            locator,
            exc.kind.value,
            exc.details,
        )
        return placeholder_metadata(locator, fingerprint), True
    except Exception:
        logger.exception("Unexpected metadata failure for %s; serving placeholder", locator)
        return placeholder_metadata(locator, fingerprint), True
    if cache is not None:
        cache.set(locator, metadata)
    return metadata, False
