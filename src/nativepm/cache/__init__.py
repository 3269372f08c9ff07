"""ABI-aware artifact cache APIs."""

from .keys import CacheKey, cache_key, config_hash
from .store import (
    ArtifactCache,
    CacheEntry,
    FileArtifactCache,
    MemoryArtifactCache,
    rank_compatible,
    tree_checksum,
)

__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "CacheKey",
    "FileArtifactCache",
    "MemoryArtifactCache",
    "cache_key",
    "config_hash",
    "rank_compatible",
    "tree_checksum",
]
