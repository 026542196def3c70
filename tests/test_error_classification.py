from __future__ import annotations

import pytest

from engine.errors import (
    ConversionError,
    ErrorKind,
    InvalidInputError,
    classify_diagnostic,
    conversion_error_from_diagnostic,
    http_status_for,
    is_retryable,
)


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("ERROR: [youtube] abc: Sign in to confirm you're not a bot", ErrorKind.SOURCE_BLOCKED),
        ("ERROR: [youtube] abc: Sign in to confirm you’re not a bot", ErrorKind.SOURCE_BLOCKED),
        ("ERROR: unable to download webpage: HTTP Error 403: Forbidden", ErrorKind.SOURCE_BLOCKED),
        ("ERROR: [youtube] abc: Private video. Sign in if you've been granted access", ErrorKind.SOURCE_UNAVAILABLE),
        ("ERROR: [youtube] abc: Video unavailable", ErrorKind.SOURCE_UNAVAILABLE),
        ("ERROR: Unsupported URL: https://example.com/", ErrorKind.SOURCE_UNAVAILABLE),
        ("ERROR: HTTP Error 404: Not Found", ErrorKind.SOURCE_UNAVAILABLE),
        ("ERROR: HTTP Error 429: Too Many Requests", ErrorKind.RATE_LIMITED),
        ("ERROR: Read timed out.", ErrorKind.TIMEOUT),
        ("ERROR: Postprocessing: ffprobe and ffmpeg not found.", ErrorKind.TOOL_MISCONFIGURED),
        ("yt-dlp: error: no such option: --bogus", ErrorKind.TOOL_MISCONFIGURED),
        ("/usr/bin/python3: No module named yt_dlp", ErrorKind.TOOL_MISCONFIGURED),
        ("ERROR: [soundcloud] 123: Unable to extract client id", ErrorKind.PARSE_FAILURE),
        ("something nobody has seen before", ErrorKind.UNKNOWN),
        ("", ErrorKind.UNKNOWN),
        (None, ErrorKind.UNKNOWN),
    ],
)
def test_classify_diagnostic(stderr, expected) -> None:
    assert classify_diagnostic(stderr) is expected


def test_first_matching_signature_wins() -> None:
    # Both a block and an unavailability signature are present.
    text = "HTTP Error 403: Forbidden (video unavailable)"
    assert classify_diagnostic(text) is ErrorKind.SOURCE_BLOCKED
    # The status code decides, not its "Service Unavailable" reason phrase.
    assert classify_diagnostic("ERROR: HTTP Error 503: Service Unavailable") is ErrorKind.RATE_LIMITED


def test_private_video_beats_retry_warnings() -> None:
    stderr = (
        "WARNING: [youtube] abc: The read operation timed out. Retrying (1/10)...\n"
        "WARNING: [youtube] abc: The read operation timed out. Retrying (2/10)...\n"
        "ERROR: [youtube] abc: Private video. Sign in if you've been granted access to this video\n"
    )
    kind = classify_diagnostic(stderr)
    assert kind is ErrorKind.SOURCE_UNAVAILABLE
    assert is_retryable(kind) is False
    assert http_status_for(kind) == 404


def test_error_lines_decide_before_warnings() -> None:
    stderr = (
        "WARNING: [youtube] abc: Read timed out. Retrying (1/3)...\n"
        "ERROR: Postprocessing: ffprobe and ffmpeg not found. Please install or provide the path\n"
    )
    assert classify_diagnostic(stderr) is ErrorKind.TOOL_MISCONFIGURED


def test_whole_text_is_used_when_error_lines_match_nothing() -> None:
    stderr = "WARNING: HTTP Error 429: Too Many Requests\nERROR: giving up\n"
    assert classify_diagnostic(stderr) is ErrorKind.RATE_LIMITED


def test_http_status_mapping() -> None:
    assert http_status_for(ErrorKind.INVALID_INPUT) == 400
    assert http_status_for(ErrorKind.SOURCE_BLOCKED) == 403
    assert http_status_for(ErrorKind.SOURCE_UNAVAILABLE) == 404
    assert http_status_for(ErrorKind.RATE_LIMITED) == 503
    assert http_status_for(ErrorKind.TIMEOUT) == 504
    assert http_status_for(ErrorKind.PARSE_FAILURE) == 502
    assert http_status_for(ErrorKind.TOOL_MISCONFIGURED) == 500
    assert http_status_for(ErrorKind.UNKNOWN) == 500


def test_only_transient_kinds_are_retryable() -> None:
    retryable = {kind for kind in ErrorKind if is_retryable(kind)}
    assert retryable == {ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED}


def test_error_payload_carries_kind_and_optional_details() -> None:
    error = conversion_error_from_diagnostic("ERROR: Private video", fingerprint="a" * 64, exit_code=1)
    assert isinstance(error, ConversionError)
    assert error.kind is ErrorKind.SOURCE_UNAVAILABLE
    assert error.exit_code == 1
    assert error.status_code == 404
    payload = error.to_payload()
    assert payload["success"] is False
    assert payload["kind"] == "SourceUnavailable"
    assert payload["details"] == "ERROR: Private video"
    assert "details" not in error.to_payload(include_details=False)


def test_invalid_input_error_keeps_message() -> None:
    error = InvalidInputError("Search query is required.")
    assert error.kind is ErrorKind.INVALID_INPUT
    assert str(error) == "Search query is required."
    assert error.status_code == 400
