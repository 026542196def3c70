"""Durable storage for converted audio artifacts.

Callers depend on the :class:`ArtifactStore` protocol only. Locations are
always artifact filenames (``<fingerprint>.<ext>``); the local backend
refuses anything else, so untrusted input can never pick a path.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config.settings import AUDIO_PUBLIC_PREFIX
from engine.fingerprint import split_artifact_filename
from engine.paths import ensure_dir, resolve_dir

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class ArtifactRef:
    fingerprint: str
    location: str
    location_uri: str
    size_bytes: int
    created_at: str

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "location": self.location,
            "location_uri": self.location_uri,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
        }


def _iso(ts: float | datetime) -> str:
    if isinstance(ts, datetime):
        dt = ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    else:
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.replace(microsecond=0).isoformat()


def _parse_location(location: str) -> tuple[str, str]:
    parts = split_artifact_filename(location)
    if parts is None:
        raise ValueError(f"invalid artifact location: {location!r}")
    return parts


def content_type_for(location: str) -> str:
    guessed, _ = mimetypes.guess_type(location)
    return guessed or "application/octet-stream"


def atomic_move(src, dst):
    try:
        os.replace(src, dst)
    except OSError:
        # Cross-device: copy next to the destination, then swap it in.
        tmp_dst = f"{dst}.{uuid.uuid4().hex}.part"
        shutil.copy2(src, tmp_dst)
        os.replace(tmp_dst, dst)
        os.remove(src)


class ArtifactStore(Protocol):
    backend: str

    def exists(self, location: str) -> bool:
        ...

    def stat(self, location: str) -> ArtifactRef | None:
        ...

    def put(self, local_path: str, location: str) -> ArtifactRef:
        ...

    def read(self, location: str) -> Iterator[bytes]:
        ...

    def delete(self, location: str) -> None:
        ...


class LocalArtifactStore:
    backend = "local"

    def __init__(self, root, public_prefix=AUDIO_PUBLIC_PREFIX):
        self.root = os.path.abspath(str(root))
        self.public_prefix = "/" + str(public_prefix or "").strip("/")
        ensure_dir(self.root)

    def path_for(self, location):
        _parse_location(location)
        return resolve_dir(location, self.root)

    def public_uri(self, location):
        return f"{self.public_prefix}/{location}"

    def exists(self, location):
        return os.path.isfile(self.path_for(location))

    def stat(self, location):
        key, _ = _parse_location(location)
        path = self.path_for(location)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return ArtifactRef(
            fingerprint=key,
            location=location,
            location_uri=self.public_uri(location),
            size_bytes=st.st_size,
            created_at=_iso(st.st_mtime),
        )

    def put(self, local_path, location):
        dest = self.path_for(location)
        atomic_move(local_path, dest)
        ref = self.stat(location)
        if ref is None:
            raise FileNotFoundError(dest)
        return ref

    def read(self, location, chunk_size=_CHUNK_SIZE):
        path = self.path_for(location)
        with open(path, "rb") as handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def delete(self, location):
        try:
            os.remove(self.path_for(location))
        except FileNotFoundError:
            pass


class S3ArtifactStore:
    """Artifacts in an S3-compatible bucket, handed out as presigned URLs."""

    backend = "s3"

    def __init__(self, client, bucket, *, prefix="", presign_seconds=0, endpoint_url=None):
        self.client = client
        self.bucket = bucket
        self.prefix = str(prefix or "").strip("/")
        self.presign_seconds = int(presign_seconds or 0)
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None

    def key_for(self, location):
        _parse_location(location)
        return f"{self.prefix}/{location}" if self.prefix else location

    def public_uri(self, location):
        key = self.key_for(location)
        if self.presign_seconds > 0:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.presign_seconds,
            )
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def _head(self, location):
        try:
            return self.client.head_object(Bucket=self.bucket, Key=self.key_for(location))
        except ClientError as exc:
            code = str((exc.response or {}).get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return None
            raise

    def exists(self, location):
        return self._head(location) is not None

    def stat(self, location):
        head = self._head(location)
        if head is None:
            return None
        key, _ = _parse_location(location)
        last_modified = head.get("LastModified") or datetime.now(timezone.utc)
        return ArtifactRef(
            fingerprint=key,
            location=location,
            location_uri=self.public_uri(location),
            size_bytes=int(head.get("ContentLength") or 0),
            created_at=_iso(last_modified),
        )

    def put(self, local_path, location):
        key_name, _ = _parse_location(location)
        size = os.path.getsize(local_path)
        self.client.upload_file(
            str(local_path),
            self.bucket,
            self.key_for(location),
            ExtraArgs={"ContentType": content_type_for(location)},
        )
        # Local disk is only a staging area when a bucket is configured.
        try:
            os.remove(local_path)
        except FileNotFoundError:
            pass
        return ArtifactRef(
            fingerprint=key_name,
            location=location,
            location_uri=self.public_uri(location),
            size_bytes=size,
            created_at=_iso(datetime.now(timezone.utc)),
        )

    def read(self, location, chunk_size=_CHUNK_SIZE):
        response = self.client.get_object(Bucket=self.bucket, Key=self.key_for(location))
        body = response["Body"]
        try:
            for chunk in body.iter_chunks(chunk_size=chunk_size):
                if chunk:
                    yield chunk
        finally:
            body.close()

    def delete(self, location):
        self.client.delete_object(Bucket=self.bucket, Key=self.key_for(location))


def build_s3_client(s3_settings):
    return boto3.client(
        "s3",
        endpoint_url=s3_settings.endpoint_url,
        region_name=s3_settings.region,
        aws_access_key_id=s3_settings.access_key_id,
        aws_secret_access_key=s3_settings.secret_access_key,
    )


def build_store(settings, paths, *, client_factory=build_s3_client):
    """Create the configured store and report whether it is degraded.

    Returns ``(store, degraded)``. When a bucket is configured but cannot be
    reached the local store is used instead and ``degraded`` is True.
    """
    local = LocalArtifactStore(paths.audio_dir)
    s3_settings = getattr(settings, "s3", None)
    if s3_settings is None:
        return local, False
    try:
        client = client_factory(s3_settings)
        client.head_bucket(Bucket=s3_settings.bucket)
    except (BotoCoreError, ClientError) as exc:
        logger.error(
            "Remote store unreachable (bucket=%s): %s; running degraded on local disk %s",
            s3_settings.bucket,
            exc,
            paths.audio_dir,
        )
        return local, True
    logger.info("Remote store active bucket=%s prefix=%s", s3_settings.bucket, s3_settings.prefix or "-")
    return (
        S3ArtifactStore(
            client,
            s3_settings.bucket,
            prefix=s3_settings.prefix,
            presign_seconds=s3_settings.presign_seconds,
            endpoint_url=s3_settings.endpoint_url,
        ),
        False,
    )
