"""Descriptive track metadata."""

from __future__ import annotations

from dataclasses import asdict, dataclass

UNKNOWN_ARTIST = "Unknown"


@dataclass(frozen=True)
class TrackMetadata:
    """Display metadata for a track; never used as a cache key."""

    title: str
    artist: str
    thumbnail_url: str | None
    source_url: str

    def to_dict(self) -> dict:
        return asdict(self)

    def to_search_result(self) -> dict:
        return {
            "title": self.title,
            "artist": self.artist,
            "url": self.source_url,
            "thumbnail": self.thumbnail_url,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "TrackMetadata":
        return cls(
            title=str(payload.get("title") or ""),
            artist=str(payload.get("artist") or UNKNOWN_ARTIST),
            thumbnail_url=payload.get("thumbnail_url"),
            source_url=str(payload.get("source_url") or ""),
        )


def placeholder_metadata(source_url: str, fingerprint: str | None = None) -> TrackMetadata:
    """Metadata served when the extractor could not describe a stored artifact."""
    title = "Downloaded Track (Metadata N/A)"
    if fingerprint:
        title = f"Downloaded Track (ID: {fingerprint[:8]})"
    return TrackMetadata(
        title=title,
        artist=UNKNOWN_ARTIST,
        thumbnail_url=None,
        source_url=source_url,
    )
