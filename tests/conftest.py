import sys
import threading
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.config import Settings
from engine.converter import DownloadResult
from engine.fingerprint import artifact_filename
from engine.paths import build_engine_paths
from media.artifact_store import LocalArtifactStore
from metadata.types import TrackMetadata


class FakeResolver:
    source = "soundcloud"

    def __init__(self, results=None, error=None, describe_error=None):
        self.results = list(results or [])
        self.error = error
        self.describe_error = describe_error
        self.search_calls = []
        self.describe_calls = []

    def search(self, query, limit=10):
        self.search_calls.append((query, limit))
        if self.error is not None:
            raise self.error
        return list(self.results)

    def describe(self, locator):
        self.describe_calls.append(locator)
        if self.describe_error is not None:
            raise self.describe_error
        return TrackMetadata(
            title="Around the World",
            artist="Daft Punk",
            thumbnail_url="https://img.example/cover.jpg",
            source_url=locator,
        )


class FakeConverter:
    """Stores a tiny artifact per call; blocks on ``gate`` until released."""

    def __init__(self, store, paths, *, audio_format="mp3", error=None, release=True):
        self.store = store
        self.staging_dir = Path(paths.staging_dir)
        self.audio_format = audio_format
        self.error = error
        self.gate = threading.Event()
        if release:
            self.gate.set()
        self.started = threading.Event()
        self.calls = 0
        self.terminated = 0
        self._lock = threading.Lock()

    def target_location(self, key):
        return artifact_filename(key, self.audio_format)

    def convert(self, locator, key):
        with self._lock:
            self.calls += 1
        self.started.set()
        assert self.gate.wait(5), "converter gate was never released"
        if self.error is not None:
            raise self.error
        location = self.target_location(key)
        staged = self.staging_dir / location
        staged.write_bytes(b"ID3" + key.encode("ascii"))
        artifact = self.store.put(str(staged), location)
        metadata = TrackMetadata(title="Song", artist="Artist", thumbnail_url=None, source_url=locator)
        return DownloadResult(artifact, metadata, cached=False)

    def terminate_all(self):
        self.terminated += 1
        return 0


@pytest.fixture
def engine_paths(tmp_path):
    return build_engine_paths(audio_dir=str(tmp_path / "audio"), log_dir=str(tmp_path / "logs"))


@pytest.fixture
def local_store(engine_paths):
    return LocalArtifactStore(engine_paths.audio_dir)


@pytest.fixture
def make_settings():
    def _make(**overrides):
        overrides.setdefault("ytdlp_command", ("yt-dlp",))
        return Settings(**overrides)

    return _make


@pytest.fixture
def fake_resolver_cls():
    return FakeResolver


@pytest.fixture
def fake_converter_cls():
    return FakeConverter
