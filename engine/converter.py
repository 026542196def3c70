import glob
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass

from engine.errors import (
    ConversionError,
    ErrorKind,
    conversion_error_from_diagnostic,
)
from engine.fingerprint import artifact_filename
from engine.json_utils import log_event
from engine.paths import ensure_dir
from media.artifact_store import ArtifactRef
from metadata.resolver import describe_or_placeholder
from metadata.types import TrackMetadata

logger = logging.getLogger(__name__)


class CancelledError(Exception):
    """Raised to abort an in-flight conversion during shutdown."""


@dataclass(frozen=True)
class DownloadResult:
    artifact: ArtifactRef
    metadata: TrackMetadata
    cached: bool
    metadata_degraded: bool = False


def _terminate_subprocess(proc, *, grace_sec=3.0):
    """Best-effort terminate a subprocess quickly and safely."""
    if proc is None or proc.poll() is not None:
        return
    try:
        proc.terminate()
    except OSError:
        return
    try:
        proc.wait(timeout=grace_sec)
    except subprocess.TimeoutExpired:
        try:
            proc.kill()
        except OSError:
            pass


def _run_ytdlp_cli(cmd_argv, *, timeout=None, cancel_check=None, on_start=None, on_exit=None):
    """Run yt-dlp and return its stderr text.

    Raises:
        FileNotFoundError: The executable does not exist.
        subprocess.TimeoutExpired: The process ran longer than ``timeout``.
        subprocess.CalledProcessError: Non-zero exit; ``stderr`` holds diagnostics.
        CancelledError: ``cancel_check`` returned True while running.
    """
    stderr_lines = []

    proc = subprocess.Popen(
        cmd_argv,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        bufsize=1,
    )
    if callable(on_start):
        on_start(proc)

    def _read_stderr():
        stream = proc.stderr
        if stream is None:
            return
        for raw_line in iter(stream.readline, ""):
            stderr_lines.append(raw_line)
        stream.close()

    reader = threading.Thread(target=_read_stderr, name="ytdlp-stderr-reader", daemon=True)
    reader.start()

    deadline = time.monotonic() + timeout if timeout else None
    try:
        while proc.poll() is None:
            if callable(cancel_check) and cancel_check():
                _terminate_subprocess(proc)
                reader.join(timeout=1)
                raise CancelledError("conversion cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                _terminate_subprocess(proc)
                reader.join(timeout=1)
                raise subprocess.TimeoutExpired(cmd_argv, timeout, stderr="".join(stderr_lines))
            time.sleep(0.2)
        return_code = proc.wait()
        reader.join(timeout=1)
    finally:
        if callable(on_exit):
            on_exit(proc)

    stderr_output = "".join(stderr_lines).strip()
    if return_code != 0:
        raise subprocess.CalledProcessError(return_code, cmd_argv, stderr=stderr_output)
    return stderr_output


def build_convert_argv(command, locator, output_template, *, audio_format, user_agent=None,
                       socket_timeout=300, audio_quality=None):
    argv = [
        *command,
        "-x",
        "--audio-format",
        audio_format,
        "--no-playlist",
        "--force-overwrites",
        "--no-part",
        "--socket-timeout",
        str(int(socket_timeout)),
        "-o",
        output_template,
    ]
    if audio_quality:
        argv += ["--audio-quality", str(audio_quality)]
    if user_agent:
        argv += ["--user-agent", user_agent]
    # Everything after "--" is a URL, never an option.
    argv += ["--", locator]
    return argv


class Converter:
    """Turns a locator into a stored audio artifact named by its fingerprint."""

    def __init__(self, store, paths, settings, *, resolver=None, metadata_cache=None, sleep=time.sleep):
        self.store = store
        self.staging_dir = paths.staging_dir
        self.settings = settings
        self.resolver = resolver
        self.metadata_cache = metadata_cache
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._procs_lock = threading.Lock()
        self._procs = {}
        ensure_dir(self.staging_dir)

    @property
    def audio_format(self):
        return self.settings.audio_format

    def target_location(self, key):
        return artifact_filename(key, self.audio_format)

    def _staged_paths(self, key):
        return glob.glob(os.path.join(glob.escape(self.staging_dir), f"{key}.*"))

    def _cleanup_staging(self, key):
        removed = 0
        for path in self._staged_paths(key):
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                pass
        if removed:
            logger.info("Cleaned up %d partial file(s) for %s", removed, key[:12])

    def describe(self, locator, key):
        return describe_or_placeholder(self.resolver, locator, fingerprint=key, cache=self.metadata_cache)

    def convert(self, locator, key):
        """Produce (or reuse) the artifact for ``locator``.

        Returns a :class:`DownloadResult`. Raises :class:`ConversionError`
        with a classified kind; no partial output survives a failure.
        """
        location = self.target_location(key)
        existing = self.store.stat(location)
        if existing is not None:
            logger.info("Artifact %s already stored; skipping conversion", location)
            metadata, degraded = self.describe(locator, key)
            return DownloadResult(existing, metadata, cached=True, metadata_degraded=degraded)

        max_attempts = max(1, int(self.settings.convert_max_attempts))
        attempt = 1
        while True:
            try:
                artifact = self._convert_once(locator, key, location, attempt=attempt)
                break
            except ConversionError as exc:
                if not exc.retryable or attempt >= max_attempts or self._stop_event.is_set():
                    raise
                delay = self.settings.retry_base_delay * (2 ** (attempt - 1))
                log_event(
                    logging.WARNING,
                    "convert_retry",
                    fingerprint=key,
                    attempt=attempt,
                    delay_sec=delay,
                    kind=exc.kind.value,
                )
                self._sleep(delay)
                attempt += 1

        metadata, degraded = self.describe(locator, key)
        return DownloadResult(artifact, metadata, cached=False, metadata_degraded=degraded)

    def _register(self, key, proc):
        with self._procs_lock:
            self._procs[key] = proc

    def _unregister(self, key, proc):
        with self._procs_lock:
            if self._procs.get(key) is proc:
                self._procs.pop(key, None)

    def _convert_once(self, locator, key, location, *, attempt=1):
        if self._stop_event.is_set():
            raise ConversionError(ErrorKind.CANCELLED, fingerprint=key)
        self._cleanup_staging(key)
        output_template = os.path.join(self.staging_dir, f"{key}.%(ext)s")
        argv = build_convert_argv(
            self.settings.ytdlp_command,
            locator,
            output_template,
            audio_format=self.audio_format,
            user_agent=self.settings.user_agent,
            socket_timeout=self.settings.download_socket_timeout_seconds,
            audio_quality=self.settings.audio_quality,
        )
        log_event(logging.INFO, "convert_start", fingerprint=key, url=locator, attempt=attempt)
        started = time.monotonic()
        try:
            stderr_output = _run_ytdlp_cli(
                argv,
                timeout=self.settings.convert_timeout_seconds,
                cancel_check=self._stop_event.is_set,
                on_start=lambda proc: self._register(key, proc),
                on_exit=lambda proc: self._unregister(key, proc),
            )
        except subprocess.CalledProcessError as exc:
            self._cleanup_staging(key)
            diagnostic = exc.stderr or f"yt-dlp exited with code {exc.returncode}"
            if self._stop_event.is_set():
                error = ConversionError(
                    ErrorKind.CANCELLED, details=diagnostic, fingerprint=key, exit_code=exc.returncode
                )
            else:
                error = conversion_error_from_diagnostic(diagnostic, fingerprint=key, exit_code=exc.returncode)
            self._log_failure(error, locator)
            raise error from exc
        except FileNotFoundError as exc:
            self._cleanup_staging(key)
            error = ConversionError(
                ErrorKind.TOOL_MISCONFIGURED,
                details=f"converter executable not found: {argv[0]}",
                fingerprint=key,
            )
            self._log_failure(error, locator)
            raise error from exc
        except subprocess.TimeoutExpired as exc:
            self._cleanup_staging(key)
            error = ConversionError(
                ErrorKind.TIMEOUT,
                details=f"conversion exceeded {self.settings.convert_timeout_seconds}s\n{exc.stderr or ''}".strip(),
                fingerprint=key,
            )
            self._log_failure(error, locator)
            raise error from exc
        except CancelledError as exc:
            self._cleanup_staging(key)
            error = ConversionError(ErrorKind.CANCELLED, details=str(exc), fingerprint=key)
            self._log_failure(error, locator)
            raise error from exc

        if stderr_output:
            logger.warning("yt-dlp stderr for %s (non-error output): %s", key[:12], stderr_output)

        staged = os.path.join(self.staging_dir, location)
        if not os.path.isfile(staged) or os.path.getsize(staged) == 0:
            self._cleanup_staging(key)
            error = ConversionError(
                ErrorKind.UNKNOWN,
                details=f"yt-dlp exited 0 but produced no {self.audio_format} output",
                fingerprint=key,
                exit_code=0,
            )
            self._log_failure(error, locator)
            raise error

        try:
            artifact = self.store.put(staged, location)
        except Exception as exc:
            self._cleanup_staging(key)
            error = ConversionError(
                ErrorKind.UNKNOWN,
                "Failed to store the converted track.",
                details=str(exc),
                fingerprint=key,
            )
            logger.exception("Storing artifact %s failed", location)
            raise error from exc
        finally:
            self._cleanup_staging(key)

        log_event(
            logging.INFO,
            "convert_done",
            fingerprint=key,
            url=locator,
            size_bytes=artifact.size_bytes,
            duration_sec=round(time.monotonic() - started, 3),
        )
        return artifact

    def _log_failure(self, error, locator):
        level = logging.ERROR
        fields = {}
        if error.kind is ErrorKind.TOOL_MISCONFIGURED:
            fields["operator_alert"] = True
        elif error.kind is ErrorKind.CANCELLED:
            level = logging.WARNING
        log_event(
            level,
            "convert_failed",
            fingerprint=error.fingerprint,
            url=locator,
            kind=error.kind.value,
            exit_code=error.exit_code,
            details=error.details,
            **fields,
        )

    def terminate_all(self):
        """Stop new conversions and terminate running ones."""
        self._stop_event.set()
        with self._procs_lock:
            running = list(self._procs.items())
        for key, proc in running:
            logger.warning("Terminating conversion %s for shutdown", key[:12])
            _terminate_subprocess(proc)
        return len(running)
