from .types import TrackMetadata, placeholder_metadata

__all__ = ["TrackMetadata", "placeholder_metadata"]
