"""
Caching for the Recommendation Service.

- LRUCache: thread-safe LRU with optional TTL and hit/miss statistics
- ResponseCache: ranked responses keyed by everything that can change them
- CachedFeatureStore: read-through cache for immutable content features

The response cache is cleared whenever the model registry swaps in a new
bundle, so responses never outlive the models that produced them.

Usage:
    cache = ResponseCache(ttl_seconds=300)
    registry.add_listener(cache.on_model_update)
"""

from typing import Dict, List, Optional, Any, Tuple, Callable, Iterable
from collections import OrderedDict
from dataclasses import dataclass, field
import hashlib
import threading
import logging
import time

import numpy as np

from learnrank.feature_store import FeatureStore
from learnrank.types import (
    ContentFeatures,
    ExperimentAssignment,
    LearningPath,
    RecommendationRequest,
    RecommendationResponse,
    UserContentInteraction,
    UserFeatures,
)

logger = logging.getLogger(__name__)


# ============================================================================
# LRU Cache
# ============================================================================

class LRUCache:
    """
    Thread-safe LRU cache with TTL support.

    Args:
        max_size: Maximum number of entries
        ttl_seconds: Entry lifetime; None keeps entries until evicted
        name: Cache name for logging
        clock: Time source (seconds), injectable for tests
    """

    def __init__(
        self,
        max_size: int = 10000,
        ttl_seconds: Optional[float] = None,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic
    ):
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock

        self._cache: "OrderedDict[Any, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: Any) -> Optional[Any]:
        """Cached value, or None if absent or expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, stored_at = entry
            if self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds:
                del self._cache[key]
                self.misses += 1
                return None

            self._cache.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: Any, value: Any) -> None:
        with self._lock:
            self._cache[key] = (value, self._clock())
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_size:
                self._cache.popitem(last=False)
                self.evictions += 1

    def delete(self, key: Any) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                'name': self.name,
                'size': len(self._cache),
                'max_size': self.max_size,
                'hits': self.hits,
                'misses': self.misses,
                'hit_rate': self.hits / total if total > 0 else 0.0,
                'evictions': self.evictions,
            }


# ============================================================================
# Response Cache
# ============================================================================

def candidate_hash(candidate_ids: Iterable[str]) -> str:
    """Order-independent hash of a candidate set."""
    joined = '\x1f'.join(sorted(set(candidate_ids)))
    return hashlib.md5(joined.encode('utf-8')).hexdigest()


def make_cache_key(
    request: RecommendationRequest,
    variant: str,
    model_version: Optional[str]
) -> Tuple:
    return (
        request.user_id,
        request.context.fingerprint(),
        candidate_hash(request.candidate_ids),
        request.k,
        request.include_explanations,
        variant,
        model_version,
    )


@dataclass
class CachedResponse:
    """A served response plus the content categories of its items."""
    response: RecommendationResponse
    categories: Dict[str, str] = field(default_factory=dict)


class ResponseCache:
    """
    Ranked responses for repeated identical requests.

    The key covers user, context fingerprint, candidate set, K, explanation
    flag, variant and model version.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic
    ):
        self._cache = LRUCache(max_size=max_size, ttl_seconds=ttl_seconds, name="responses", clock=clock)

    def get(
        self,
        request: RecommendationRequest,
        variant: str,
        model_version: Optional[str]
    ) -> Optional[CachedResponse]:
        return self._cache.get(make_cache_key(request, variant, model_version))

    def put(
        self,
        request: RecommendationRequest,
        variant: str,
        model_version: Optional[str],
        response: RecommendationResponse,
        categories: Optional[Dict[str, str]] = None
    ) -> None:
        self._cache.put(
            make_cache_key(request, variant, model_version),
            CachedResponse(response, dict(categories or {})),
        )

    def clear(self) -> None:
        self._cache.clear()

    def on_model_update(self, version: str) -> None:
        """Registry listener: drop every response of the previous version."""
        size = self._cache.size()
        self._cache.clear()
        logger.info(f"Response cache cleared for model {version} ({size} entries)")

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()


# ============================================================================
# Cached Feature Store
# ============================================================================

class CachedFeatureStore(FeatureStore):
    """
    Read-through cache over another feature store.

    Only content features and embeddings are cached; they are immutable
    per model version. User-scoped data always goes to the backing store.
    Writes invalidate the cached entry.
    """

    def __init__(self, backend: FeatureStore, ttl_seconds: float = 3600.0, max_size: int = 50000):
        self.backend = backend
        self._features = LRUCache(max_size=max_size, ttl_seconds=ttl_seconds, name="content_features")
        self._embeddings = LRUCache(max_size=max_size, ttl_seconds=ttl_seconds, name="content_embeddings")

    async def get_user_features(self, user_id: str) -> Optional[UserFeatures]:
        return await self.backend.get_user_features(user_id)

    async def put_user_features(self, features: UserFeatures) -> None:
        await self.backend.put_user_features(features)

    async def get_user_embedding(self, user_id: str) -> Optional[np.ndarray]:
        return await self.backend.get_user_embedding(user_id)

    async def put_user_embedding(self, user_id: str, embedding: np.ndarray) -> None:
        await self.backend.put_user_embedding(user_id, embedding)

    async def get_content_features(self, content_id: str) -> Optional[ContentFeatures]:
        features = self._features.get(content_id)
        if features is None:
            features = await self.backend.get_content_features(content_id)
            if features is not None:
                self._features.put(content_id, features)
        return features

    async def put_content_features(self, features: ContentFeatures) -> None:
        await self.backend.put_content_features(features)
        self._features.delete(features.content_id)
        self._embeddings.delete(features.content_id)

    async def get_content_embedding(self, content_id: str) -> Optional[np.ndarray]:
        embedding = self._embeddings.get(content_id)
        if embedding is None:
            embedding = await self.backend.get_content_embedding(content_id)
            if embedding is not None:
                self._embeddings.put(content_id, embedding)
        return embedding

    async def put_content_embedding(self, content_id: str, embedding: np.ndarray) -> None:
        await self.backend.put_content_embedding(content_id, embedding)
        self._embeddings.delete(content_id)

    async def _batch_through(self, cache: LRUCache, content_ids: Iterable[str], fetch_many) -> Dict[str, Any]:
        """Serve hits from ``cache``; fetch all misses in one backend call."""
        result = {}
        misses = []
        for content_id in dict.fromkeys(content_ids):
            value = cache.get(content_id)
            if value is None:
                misses.append(content_id)
            else:
                result[content_id] = value

        if misses:
            fetched = await fetch_many(misses)
            for content_id, value in fetched.items():
                cache.put(content_id, value)
            result.update(fetched)
        return result

    async def batch_get_content_features(self, content_ids: Iterable[str]) -> Dict[str, ContentFeatures]:
        return await self._batch_through(self._features, content_ids, self.backend.batch_get_content_features)

    async def batch_get_content_embeddings(self, content_ids: Iterable[str]) -> Dict[str, np.ndarray]:
        return await self._batch_through(self._embeddings, content_ids, self.backend.batch_get_content_embeddings)

    async def get_user_interactions(self, user_id: str, limit: int = 100) -> List[UserContentInteraction]:
        return await self.backend.get_user_interactions(user_id, limit)

    async def record_interaction(self, interaction: UserContentInteraction) -> None:
        await self.backend.record_interaction(interaction)

    async def get_user_learning_path(self, user_id: str) -> Optional[LearningPath]:
        return await self.backend.get_user_learning_path(user_id)

    async def put_learning_path(self, path: LearningPath) -> None:
        await self.backend.put_learning_path(path)

    async def get_experiment_assignment(
        self,
        user_id: str,
        experiment_id: str
    ) -> Optional[ExperimentAssignment]:
        return await self.backend.get_experiment_assignment(user_id, experiment_id)

    async def put_experiment_assignment(self, assignment: ExperimentAssignment) -> None:
        await self.backend.put_experiment_assignment(assignment)

    def invalidate_content(self, content_id: str) -> None:
        self._features.delete(content_id)
        self._embeddings.delete(content_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'content_features': self._features.stats(),
            'content_embeddings': self._embeddings.stats(),
        }
