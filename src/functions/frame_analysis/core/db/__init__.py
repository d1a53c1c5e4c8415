"""Database access for frame analysis."""

from .cache_store import SupabaseCacheStore

__all__ = ["SupabaseCacheStore"]
