from __future__ import annotations

import os
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError

from engine.config import S3Settings
from engine.fingerprint import artifact_filename, fingerprint
from media.artifact_store import (
    LocalArtifactStore,
    S3ArtifactStore,
    atomic_move,
    build_store,
    content_type_for,
)

KEY = fingerprint("https://soundcloud.com/artist/track")
LOCATION = artifact_filename(KEY, "mp3")


def _staged(tmp_path, data=b"ID3audio"):
    staged = tmp_path / "staged.mp3"
    staged.write_bytes(data)
    return staged


def test_local_put_stat_read_delete(tmp_path, local_store) -> None:
    assert local_store.stat(LOCATION) is None
    assert not local_store.exists(LOCATION)

    ref = local_store.put(str(_staged(tmp_path)), LOCATION)
    assert ref.fingerprint == KEY
    assert ref.location == LOCATION
    assert ref.location_uri == f"/audio/{LOCATION}"
    assert ref.size_bytes == len(b"ID3audio")
    assert not (tmp_path / "staged.mp3").exists()

    assert local_store.exists(LOCATION)
    assert b"".join(local_store.read(LOCATION)) == b"ID3audio"
    assert local_store.stat(LOCATION).to_dict()["size_bytes"] == 8

    local_store.delete(LOCATION)
    local_store.delete(LOCATION)
    assert local_store.stat(LOCATION) is None


def test_local_put_replaces_existing_artifact(tmp_path, local_store) -> None:
    local_store.put(str(_staged(tmp_path, b"old")), LOCATION)
    local_store.put(str(_staged(tmp_path, b"newer")), LOCATION)
    assert b"".join(local_store.read(LOCATION)) == b"newer"


@pytest.mark.parametrize("location", ["../escape.mp3", "/etc/passwd", "track.mp3", ""])
def test_local_store_rejects_non_artifact_locations(local_store, location) -> None:
    with pytest.raises(ValueError):
        local_store.path_for(location)


def test_atomic_move_falls_back_to_copy(tmp_path, monkeypatch) -> None:
    src = tmp_path / "src.bin"
    src.write_bytes(b"payload")
    dst = tmp_path / "dst.bin"
    real_replace = os.replace
    calls = {"n": 0}

    def _replace(a, b):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError(18, "Invalid cross-device link")
        return real_replace(a, b)

    monkeypatch.setattr("media.artifact_store.os.replace", _replace)
    atomic_move(str(src), str(dst))
    assert dst.read_bytes() == b"payload"
    assert not src.exists()
    assert not list(tmp_path.glob("*.part"))


def test_content_type_for_mp3() -> None:
    assert content_type_for(LOCATION) == "audio/mpeg"


class FakeBody:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.closed = False

    def iter_chunks(self, chunk_size=1024):
        for idx in range(0, len(self.data), chunk_size):
            yield self.data[idx : idx + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.uploads = []
        self.deleted = []

    def _missing(self, op):
        return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, op)

    def head_bucket(self, Bucket):
        return {}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._missing("HeadObject")
        return {
            "ContentLength": len(self.objects[Key]),
            "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }

    def upload_file(self, Filename, Bucket, Key, ExtraArgs=None):
        with open(Filename, "rb") as handle:
            self.objects[Key] = handle.read()
        self.uploads.append((Bucket, Key, ExtraArgs))

    def get_object(self, Bucket, Key):
        return {"Body": FakeBody(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)
        self.objects.pop(Key, None)

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://signed.example/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


def test_s3_store_upload_and_presigned_uri(tmp_path) -> None:
    client = FakeS3Client()
    store = S3ArtifactStore(client, "tracks", prefix="audio/", presign_seconds=60)
    assert store.stat(LOCATION) is None

    ref = store.put(str(_staged(tmp_path)), LOCATION)
    assert client.uploads == [("tracks", f"audio/{LOCATION}", {"ContentType": "audio/mpeg"})]
    assert not (tmp_path / "staged.mp3").exists()
    assert ref.location_uri == f"https://signed.example/tracks/audio/{LOCATION}?expires=60"

    stat = store.stat(LOCATION)
    assert stat.size_bytes == len(b"ID3audio")
    assert stat.created_at.startswith("2024-01-01T00:00:00")
    assert b"".join(store.read(LOCATION, chunk_size=3)) == b"ID3audio"

    store.delete(LOCATION)
    assert not store.exists(LOCATION)


def test_s3_store_unsigned_uri_uses_endpoint() -> None:
    store = S3ArtifactStore(FakeS3Client(), "tracks", endpoint_url="http://minio:9000/")
    assert store.public_uri(LOCATION) == f"http://minio:9000/tracks/{LOCATION}"
    assert S3ArtifactStore(FakeS3Client(), "tracks").public_uri(LOCATION) == (
        f"https://tracks.s3.amazonaws.com/{LOCATION}"
    )


def test_s3_store_propagates_unexpected_errors() -> None:
    client = FakeS3Client()

    def _denied(Bucket, Key):
        raise ClientError({"Error": {"Code": "AccessDenied"}}, "HeadObject")

    client.head_object = _denied
    with pytest.raises(ClientError):
        S3ArtifactStore(client, "tracks").exists(LOCATION)


def test_build_store_without_bucket_is_local(engine_paths) -> None:
    store, degraded = build_store(SimpleNamespace(s3=None), engine_paths)
    assert isinstance(store, LocalArtifactStore)
    assert degraded is False


def test_build_store_uses_reachable_bucket(engine_paths) -> None:
    settings = SimpleNamespace(s3=S3Settings(bucket="tracks", prefix="audio"))
    store, degraded = build_store(settings, engine_paths, client_factory=lambda _s3: FakeS3Client())
    assert isinstance(store, S3ArtifactStore)
    assert store.prefix == "audio"
    assert degraded is False


def test_build_store_degrades_to_local_when_bucket_unreachable(engine_paths) -> None:
    class Unreachable(FakeS3Client):
        def head_bucket(self, Bucket):
            raise ClientError({"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadBucket")

    settings = SimpleNamespace(s3=S3Settings(bucket="tracks"))
    store, degraded = build_store(settings, engine_paths, client_factory=lambda _s3: Unreachable())
    assert isinstance(store, LocalArtifactStore)
    assert store.root == engine_paths.audio_dir
    assert degraded is True
