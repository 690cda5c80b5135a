"""
Recommender Service Package.

Main components:
- RecommendationService: async request pipeline around the ranking engine
- build_service: service assembled from a LearnRankConfig
- ResponseCache: TTL response cache invalidated on model swap
- CachedFeatureStore: read-through cache for content features
- LRUCache: thread-safe LRU with TTL

Example:
    >>> from service.recommender import RecommendationService
    >>> service = RecommendationService(feature_store, registry)
    >>> response = await service.get_recommendations(request)
"""

from .recommender import RecommendationService, ServingModels
from .factory import build_service
from .cache import (
    LRUCache,
    ResponseCache,
    CachedResponse,
    CachedFeatureStore,
    candidate_hash,
    make_cache_key,
)

__all__ = [
    # Core
    'RecommendationService',
    'ServingModels',
    'build_service',

    # Caching
    'LRUCache',
    'ResponseCache',
    'CachedResponse',
    'CachedFeatureStore',
    'candidate_hash',
    'make_cache_key',
]
