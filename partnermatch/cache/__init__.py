"""Recommendation page caching."""

from partnermatch.cache.backends import (
    CacheBackend,
    InMemoryCacheBackend,
    SQLiteCacheBackend,
)
from partnermatch.cache.recommendations import (
    DEFAULT_NAMESPACE,
    DEFAULT_TTL_MS,
    RecommendationCache,
    RecommendationPage,
    make_key,
)

__all__ = [
    "CacheBackend",
    "InMemoryCacheBackend",
    "SQLiteCacheBackend",
    "DEFAULT_NAMESPACE",
    "DEFAULT_TTL_MS",
    "RecommendationCache",
    "RecommendationPage",
    "make_key",
]
