"""Error kinds and diagnostic classification for external tool failures."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    SOURCE_BLOCKED = "SourceBlocked"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    TIMEOUT = "Timeout"
    TOOL_MISCONFIGURED = "ToolMisconfigured"
    RATE_LIMITED = "RateLimited"
    PARSE_FAILURE = "ParseFailure"
    UNKNOWN = "Unknown"
    CANCELLED = "Cancelled"


# Ordered (signature, kind) pairs matched case-insensitively against the
# extractor's stderr. First match wins; add new signatures here only.
CLASSIFICATION_TABLE: tuple[tuple[str, ErrorKind], ...] = (
    ("sign in to confirm you're not a bot", ErrorKind.SOURCE_BLOCKED),
    ("sign in to confirm you’re not a bot", ErrorKind.SOURCE_BLOCKED),
    ("please log in", ErrorKind.SOURCE_BLOCKED),
    ("login required", ErrorKind.SOURCE_BLOCKED),
    ("sign in to confirm your age", ErrorKind.SOURCE_BLOCKED),
    ("http error 403", ErrorKind.SOURCE_BLOCKED),
    # Status codes before the wording of their reason phrases.
    ("http error 429", ErrorKind.RATE_LIMITED),
    ("http error 503", ErrorKind.RATE_LIMITED),
    ("http error 404", ErrorKind.SOURCE_UNAVAILABLE),
    ("private video", ErrorKind.SOURCE_UNAVAILABLE),
    ("no such video", ErrorKind.SOURCE_UNAVAILABLE),
    ("has been removed", ErrorKind.SOURCE_UNAVAILABLE),
    ("members-only", ErrorKind.SOURCE_UNAVAILABLE),
    ("not available in your country", ErrorKind.SOURCE_UNAVAILABLE),
    ("unsupported url", ErrorKind.SOURCE_UNAVAILABLE),
    ("no entries found", ErrorKind.SOURCE_UNAVAILABLE),
    ("unavailable", ErrorKind.SOURCE_UNAVAILABLE),
    ("timed out", ErrorKind.TIMEOUT),
    ("read timeout", ErrorKind.TIMEOUT),
    ("no such option", ErrorKind.TOOL_MISCONFIGURED),
    ("ffprobe and ffmpeg not found", ErrorKind.TOOL_MISCONFIGURED),
    ("ffmpeg not found", ErrorKind.TOOL_MISCONFIGURED),
    ("ffprobe not found", ErrorKind.TOOL_MISCONFIGURED),
    ("no module named yt_dlp", ErrorKind.TOOL_MISCONFIGURED),
    ("ratelimitexceeded", ErrorKind.RATE_LIMITED),
    ("rate limit", ErrorKind.RATE_LIMITED),
    ("too many requests", ErrorKind.RATE_LIMITED),
    ("postprocessing:", ErrorKind.TOOL_MISCONFIGURED),
    ("ffprobe", ErrorKind.TOOL_MISCONFIGURED),
    ("ffmpeg", ErrorKind.TOOL_MISCONFIGURED),
    ("unable to extract", ErrorKind.PARSE_FAILURE),
    ("failed to parse json", ErrorKind.PARSE_FAILURE),
)


_HTTP_STATUS = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.SOURCE_BLOCKED: 403,
    ErrorKind.SOURCE_UNAVAILABLE: 404,
    ErrorKind.RATE_LIMITED: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.PARSE_FAILURE: 502,
    ErrorKind.TOOL_MISCONFIGURED: 500,
    ErrorKind.UNKNOWN: 500,
    ErrorKind.CANCELLED: 503,
}

_USER_MESSAGES = {
    ErrorKind.INVALID_INPUT: "The request is missing a valid query or URL.",
    ErrorKind.SOURCE_BLOCKED: "Blocked by the source website (bot detection or login required).",
    ErrorKind.SOURCE_UNAVAILABLE: "Track not found, unavailable, private, or the URL is not supported.",
    ErrorKind.TIMEOUT: "The source took too long to respond. Please try again.",
    ErrorKind.TOOL_MISCONFIGURED: "Audio tools are not available on the server. Please contact the operator.",
    ErrorKind.RATE_LIMITED: "The source website is rate limiting requests. Please try again later.",
    ErrorKind.PARSE_FAILURE: "Could not process the response from the source.",
    ErrorKind.UNKNOWN: "Failed to process the track.",
    ErrorKind.CANCELLED: "The server is shutting down. Please try again shortly.",
}

_RETRYABLE = frozenset({ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED})


def _match_table(text: str) -> ErrorKind:
    lowered = text.lower()
    for signature, kind in CLASSIFICATION_TABLE:
        if signature in lowered:
            return kind
    return ErrorKind.UNKNOWN


def classify_diagnostic(text: str | None) -> ErrorKind:
    """Map free-form tool diagnostics to an :class:`ErrorKind`.

    The ``ERROR:`` lines are classified first, since warnings printed while
    retrying (``timed out``, ``Retrying ...``) do not describe the failure.
    When they match nothing the whole text is tried. Within each pass
    signatures are tried in table order and the first one contained in the
    lowercased text decides. Text matching nothing is ``UNKNOWN``.
    """
    if not text:
        return ErrorKind.UNKNOWN
    text = str(text)
    error_lines = [line for line in text.splitlines() if line.lstrip().startswith("ERROR:")]
    if error_lines:
        kind = _match_table("\n".join(error_lines))
        if kind is not ErrorKind.UNKNOWN:
            return kind
    return _match_table(text)


def http_status_for(kind: ErrorKind) -> int:
    return _HTTP_STATUS.get(kind, 500)


def user_message_for(kind: ErrorKind) -> str:
    return _USER_MESSAGES.get(kind, _USER_MESSAGES[ErrorKind.UNKNOWN])


def is_retryable(kind: ErrorKind) -> bool:
    return kind in _RETRYABLE


class TunecacheError(Exception):
    """Base error carrying a classified kind.

    Attributes:
        kind: The classified :class:`ErrorKind`.
        message: Stable user-facing message.
        details: Raw diagnostic text for logs, may be empty.
    """

    def __init__(self, kind: ErrorKind, message: str | None = None, details: str | None = None) -> None:
        self.kind = kind
        self.message = message or user_message_for(kind)
        self.details = details or ""
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return http_status_for(self.kind)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    def to_payload(self, *, include_details: bool = True) -> dict:
        payload = {"success": False, "message": self.message, "kind": self.kind.value}
        if include_details and self.details:
            payload["details"] = self.details
        return payload


class InvalidInputError(TunecacheError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.INVALID_INPUT, message)


class ConversionError(TunecacheError):
    """Failure of the fetch+transcode process for one fingerprint."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        details: str | None = None,
        *,
        fingerprint: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        self.fingerprint = fingerprint
        self.exit_code = exit_code
        super().__init__(kind, message, details)


class MetadataError(TunecacheError):
    """Failure of a search or describe invocation."""


def conversion_error_from_diagnostic(diagnostic, *, fingerprint=None, exit_code=None) -> ConversionError:
    kind = classify_diagnostic(diagnostic)
    return ConversionError(kind, details=diagnostic, fingerprint=fingerprint, exit_code=exit_code)


def metadata_error_from_diagnostic(diagnostic) -> MetadataError:
    return MetadataError(classify_diagnostic(diagnostic), details=diagnostic)
