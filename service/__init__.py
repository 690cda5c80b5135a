"""
Ranking Service Package.

This package provides the online serving layer for the ranking core.

Components:
- recommender: request pipeline, response and feature caching

Usage:
    from service.recommender import RecommendationService

    service = RecommendationService(feature_store, registry, experiment_manager=manager)
    response = await service.get_recommendations(request)
"""

from service.recommender import (
    RecommendationService,
    build_service,
    ResponseCache,
    CachedFeatureStore,
    LRUCache,
)

__all__ = [
    'RecommendationService',
    'build_service',
    'ResponseCache',
    'CachedFeatureStore',
    'LRUCache',
]

__version__ = "1.0.0"
