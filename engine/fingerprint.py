"""Content keys for source locators."""

from __future__ import annotations

import hashlib
import re

FINGERPRINT_LENGTH = 64

_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{64}$")


def fingerprint(locator: str) -> str:
    """Return the SHA-256 hex digest of ``locator``.

    The locator is hashed exactly as given (no normalization), so two
    locators share a fingerprint only when they are the same string. The
    result is lowercase hex, safe as a filename and as an object key. Lone
    surrogates are hashed as their code units, so every ``str`` is accepted.
    """
    return hashlib.sha256(str(locator).encode("utf-8", errors="surrogatepass")).hexdigest()


def is_fingerprint(value: str | None) -> bool:
    return bool(value) and bool(_FINGERPRINT_RE.match(value))


def artifact_filename(key: str, ext: str) -> str:
    if not is_fingerprint(key):
        raise ValueError(f"not a fingerprint: {key!r}")
    ext = str(ext or "").strip().lstrip(".").lower()
    if not ext.isalnum():
        raise ValueError(f"invalid artifact extension: {ext!r}")
    return f"{key}.{ext}"


def split_artifact_filename(filename: str) -> tuple[str, str] | None:
    stem, sep, ext = str(filename or "").partition(".")
    if not sep or not is_fingerprint(stem) or not ext.isalnum():
        return None
    return stem, ext
