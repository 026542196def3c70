from __future__ import annotations

import pytest

from engine.fingerprint import (
    FINGERPRINT_LENGTH,
    artifact_filename,
    fingerprint,
    is_fingerprint,
    split_artifact_filename,
)


def test_fingerprint_is_stable_lowercase_hex() -> None:
    url = "https://soundcloud.com/artist/track"
    first = fingerprint(url)
    assert first == fingerprint(url)
    assert len(first) == FINGERPRINT_LENGTH
    assert first == first.lower()
    assert is_fingerprint(first)


def test_fingerprint_does_not_normalize_locators() -> None:
    base = "https://soundcloud.com/artist/track"
    assert fingerprint(base) != fingerprint(base + "/")
    assert fingerprint(base) != fingerprint(base.upper())
    assert fingerprint(base) != fingerprint(base + "?utm_source=x")


def test_known_digest() -> None:
    assert fingerprint("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_artifact_filename_round_trip() -> None:
    key = fingerprint("https://youtu.be/abc")
    name = artifact_filename(key, ".MP3")
    assert name == f"{key}.mp3"
    assert split_artifact_filename(name) == (key, "mp3")


@pytest.mark.parametrize(
    "name",
    ["", "track.mp3", "../etc/passwd", "abc.mp3", "f" * 64, "f" * 64 + ".mp3/../x", "F" * 64 + ".mp3"],
)
def test_split_rejects_non_artifact_names(name) -> None:
    assert split_artifact_filename(name) is None


def test_artifact_filename_rejects_bad_inputs() -> None:
    with pytest.raises(ValueError):
        artifact_filename("not-a-key", "mp3")
    with pytest.raises(ValueError):
        artifact_filename("a" * 64, "m/p3")


def test_fingerprint_accepts_lone_surrogates() -> None:
    key = fingerprint("https://example.com/\ud800")
    assert is_fingerprint(key)
    assert key == fingerprint("https://example.com/\ud800")
    assert key != fingerprint("https://example.com/\ud801")
