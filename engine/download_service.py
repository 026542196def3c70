"""Request coalescing front door for search and download requests."""

from __future__ import annotations

import concurrent.futures
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from urllib.parse import urlparse

from engine.converter import Converter, DownloadResult
from engine.errors import ConversionError, ErrorKind, InvalidInputError, TunecacheError
from engine.fingerprint import fingerprint
from engine.job_ledger import JobLedger, Role
from engine.json_utils import log_event
from media.artifact_store import build_store
from metadata.resolver import build_resolver, describe_or_placeholder
from metadata.search_cache import SearchCache

logger = logging.getLogger(__name__)

__all__ = ["DownloadResult", "DownloadService", "DownloadTicket", "validate_locator"]


@dataclass(frozen=True)
class DownloadTicket:
    fingerprint: str
    locator: str
    role: Role
    waiter: Future


def validate_locator(url) -> str:
    if url is None or not isinstance(url, str) or not url.strip():
        raise InvalidInputError("Source URL is required for download.")
    locator = url.strip()
    try:
        # The extractor receives the locator as a UTF-8 argv entry.
        locator.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise InvalidInputError("Source URL contains invalid characters.") from exc
    try:
        parsed = urlparse(locator)
    except ValueError as exc:
        raise InvalidInputError("Source URL is not a valid URL.") from exc
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError("Source URL must be an http(s) URL.")
    return locator


class DownloadService:
    def __init__(
        self,
        *,
        settings,
        store,
        converter,
        resolver,
        ledger=None,
        search_cache=None,
        metadata_cache=None,
        executor=None,
        store_degraded=False,
    ):
        self.settings = settings
        self.store = store
        self.converter = converter
        self.resolver = resolver
        self.ledger = ledger or JobLedger(grace_seconds=settings.job_grace_seconds)
        self.search_cache = search_cache or SearchCache(settings.search_cache_ttl_seconds)
        self.metadata_cache = metadata_cache
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(1, int(settings.max_concurrent_conversions)),
            thread_name_prefix="convert",
        )
        self.store_degraded = bool(store_degraded)
        self._closed = False

    @classmethod
    def build(cls, settings, paths):
        store, degraded = build_store(settings, paths)
        resolver = build_resolver(settings)
        metadata_cache = SearchCache(settings.search_cache_ttl_seconds)
        converter = Converter(store, paths, settings, resolver=resolver, metadata_cache=metadata_cache)
        return cls(
            settings=settings,
            store=store,
            converter=converter,
            resolver=resolver,
            metadata_cache=metadata_cache,
            store_degraded=degraded,
        )

    def search(self, query):
        """Return ``(results, from_cache)`` for the literal ``query`` string."""
        if query is None or not str(query).strip():
            raise InvalidInputError("Search query is required.")
        cached = self.search_cache.get(query)
        if cached is not SearchCache.MISS:
            logger.info("Returning cached search results for %r", query)
            return list(cached), True
        results = tuple(self.resolver.search(query, self.settings.search_limit))
        self.search_cache.set(query, results)
        return list(results), False

    def request(self, url) -> DownloadTicket:
        """Lead or join the conversion for ``url``.

        The returned ticket's waiter resolves with a :class:`DownloadResult`
        or raises the job's :class:`TunecacheError`. Conversions run on the
        service executor, so a caller that stops waiting never stops them.
        """
        locator = validate_locator(url)
        if self._closed:
            raise ConversionError(ErrorKind.CANCELLED)
        key = fingerprint(locator)
        role, _job, waiter = self.ledger.acquire_or_join(key, locator)
        if role is Role.LEADER:
            try:
                self.executor.submit(self._drive, locator, key)
            except RuntimeError as exc:
                # Executor already shut down.
                self.ledger.complete(key, error=ConversionError(ErrorKind.CANCELLED, details=str(exc), fingerprint=key))
        return DownloadTicket(fingerprint=key, locator=locator, role=role, waiter=waiter)

    def abandon(self, ticket: DownloadTicket) -> None:
        self.ledger.abandon(ticket.fingerprint, ticket.waiter)
        log_event(logging.INFO, "waiter_abandoned", fingerprint=ticket.fingerprint, role=ticket.role.value)

    def download(self, url, timeout=None) -> DownloadResult:
        ticket = self.request(url)
        try:
            return ticket.waiter.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            self.abandon(ticket)
            raise ConversionError(
                ErrorKind.TIMEOUT,
                "The track is still being processed. Please retry shortly.",
                fingerprint=ticket.fingerprint,
            ) from exc

    def _drive(self, locator, key):
        try:
            location = self.converter.target_location(key)
            existing = self.store.stat(location)
            if existing is not None:
                # Store hit without a ledger entry, e.g. after a restart.
                metadata, degraded = describe_or_placeholder(
                    self.resolver, locator, fingerprint=key, cache=self.metadata_cache
                )
                result = DownloadResult(existing, metadata, cached=True, metadata_degraded=degraded)
            else:
                self.ledger.mark_running(key)
                result = self.converter.convert(locator, key)
        except TunecacheError as exc:
            self.ledger.complete(key, error=exc)
            return
        except Exception as exc:
            logger.exception("Conversion job %s crashed", key[:12])
            self.ledger.complete(
                key,
                error=ConversionError(ErrorKind.UNKNOWN, details=str(exc), fingerprint=key),
            )
            return
        notified = self.ledger.complete(key, result=result)
        log_event(
            logging.INFO,
            "job_completed",
            fingerprint=key,
            cached=result.cached,
            waiters=notified,
        )

    def status(self):
        return {
            "store": self.store.backend,
            "degraded": self.store_degraded,
            "search_backend": getattr(self.resolver, "source", None),
            "jobs": len(self.ledger),
            "search_cache_entries": len(self.search_cache),
            "closed": self._closed,
        }

    def shutdown(self):
        if self._closed:
            return
        self._closed = True
        terminated = self.converter.terminate_all()
        self.executor.shutdown(wait=False, cancel_futures=True)
        failed = self.ledger.fail_all(
            lambda job: ConversionError(ErrorKind.CANCELLED, fingerprint=job.fingerprint)
        )
        logger.info("Download service stopped (terminated=%d failed_jobs=%d)", terminated, failed)
