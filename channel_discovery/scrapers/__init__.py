from .base import BaseListingSource
from .youtube import YouTubeSearchSource

# Map source names to classes
SOURCE_REGISTRY: dict[str, type[BaseListingSource]] = {
    "youtube": YouTubeSearchSource,
}

__all__ = [
    "BaseListingSource",
    "YouTubeSearchSource",
    "SOURCE_REGISTRY",
]
