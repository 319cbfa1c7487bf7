from .cache_repository import LocalCacheStore, TieredCacheStore

__all__ = ["LocalCacheStore", "TieredCacheStore"]
