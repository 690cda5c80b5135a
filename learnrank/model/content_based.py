"""
Content-Based Model using embedding cosine similarity.

Scores user-content pairs by comparing a user embedding with content
embeddings and ranks content-content neighbours for explanations.
"""

from typing import Dict, List, Optional, Any, Sequence, Tuple, Mapping
import logging

import numpy as np

from .base import ScoringModel, UserContext
from ..errors import InsufficientDataError
from ..types import NEUTRAL_SCORE

logger = logging.getLogger(__name__)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero norm.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vectors must have equal length, got {a.shape} and {b.shape}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    sim = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, sim))


class ContentBasedModel(ScoringModel):
    """
    Embedding table with cosine scoring.

    Example:
        >>> model = ContentBasedModel.build_from_embeddings({'c1': [0.1, 0.9], 'c2': [0.8, 0.2]})
        >>> model.get_similar_content('c1', k=5)
        [('c2', 0.34...)]
    """

    name = 'content_based'

    def __init__(self):
        self.content_ids: List[str] = []
        self.index: Dict[str, int] = {}
        self.embeddings: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None

    @property
    def dimension(self) -> int:
        return 0 if self.embeddings is None else self.embeddings.shape[1]

    @classmethod
    def build_from_embeddings(cls, embeddings: Mapping[str, Sequence[float]]) -> 'ContentBasedModel':
        """
        Build the model from a content id -> embedding map.

        Raises:
            InsufficientDataError: If the map is empty
            ValueError: If embeddings have different dimensions
        """
        if not embeddings:
            raise InsufficientDataError("Cannot build content-based model: no embeddings")

        content_ids = sorted(embeddings)
        dims = {len(embeddings[c]) for c in content_ids}
        if len(dims) != 1:
            raise ValueError(f"Embeddings must share one dimension, got {sorted(dims)}")

        model = cls()
        model.content_ids = content_ids
        model.index = {c: i for i, c in enumerate(content_ids)}
        model.embeddings = np.array([embeddings[c] for c in content_ids], dtype=np.float64)
        model._norms = np.linalg.norm(model.embeddings, axis=1)

        logger.info(f"Content-based model built: {len(content_ids)} items, dim={model.dimension}")
        return model

    def has_content(self, content_id: str) -> bool:
        return content_id in self.index

    def get_embedding(self, content_id: str) -> Optional[np.ndarray]:
        i = self.index.get(content_id)
        return None if i is None else self.embeddings[i]

    def _similarities(self, query: np.ndarray) -> np.ndarray:
        query = np.asarray(query, dtype=np.float64)
        if query.shape != (self.dimension,):
            raise ValueError(f"Query embedding must have dimension {self.dimension}, got {query.shape}")
        query_norm = np.linalg.norm(query)
        denom = self._norms * query_norm
        dots = self.embeddings @ query
        sims = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
        return np.clip(sims, -1.0, 1.0)

    def get_similar_content(self, content_id: str, k: int = 10) -> List[Tuple[str, float]]:
        """
        Most similar other content, descending by similarity (ties by id).

        Unknown content returns an empty list.
        """
        i = self.index.get(content_id)
        if i is None or k <= 0:
            return []

        sims = self._similarities(self.embeddings[i])
        ranked = sorted(
            ((self.content_ids[j], float(sims[j])) for j in range(len(self.content_ids)) if j != i),
            key=lambda x: (-x[1], x[0]),
        )
        return ranked[:k]

    def score_content(
        self,
        user_embedding: Sequence[float],
        content_ids: Sequence[str]
    ) -> Dict[str, float]:
        """
        Raw cosine similarity in [-1, 1] for each known content id.

        Unknown content ids are omitted.
        """
        known = [c for c in content_ids if c in self.index]
        if not known:
            return {}
        sims = self._similarities(user_embedding)
        return {c: float(sims[self.index[c]]) for c in known}

    def predict(self, user: UserContext, content_id: str) -> Optional[float]:
        if user.embedding is None or content_id not in self.index:
            return None
        sim = self.score_content(user.embedding, [content_id])[content_id]
        return (sim + 1.0) / 2.0

    def score_many(self, user: UserContext, content_ids: Sequence[str]) -> Dict[str, float]:
        if user.embedding is None:
            return super().score_many(user, content_ids)
        raw = self.score_content(user.embedding, content_ids)
        return {c: (raw[c] + 1.0) / 2.0 if c in raw else NEUTRAL_SCORE for c in content_ids}

    def get_info(self) -> Dict[str, Any]:
        info = super().get_info()
        info.update({'num_items': len(self.content_ids), 'dimension': self.dimension})
        return info
