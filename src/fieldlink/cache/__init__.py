"""Local detection/advisory cache (LRU + pinned favorites)."""
from fieldlink.cache.store import CacheEntry, CacheStore

__all__ = ["CacheEntry", "CacheStore"]
