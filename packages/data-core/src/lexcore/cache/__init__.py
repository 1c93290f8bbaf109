"""Tenant-scoped cache — key builder, backends, manager and invalidation."""

from lexcore.cache.backend import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from lexcore.cache.cached import CachedRepository
from lexcore.cache.invalidation import InvalidationCoordinator
from lexcore.cache.keys import CacheKeyBuilder, CacheKeySpec
from lexcore.cache.manager import CacheManager, CacheStats

__all__ = [
    "CacheBackend",
    "CacheKeyBuilder",
    "CacheKeySpec",
    "CacheManager",
    "CacheStats",
    "CachedRepository",
    "InMemoryCacheBackend",
    "InvalidationCoordinator",
    "RedisCacheBackend",
]
