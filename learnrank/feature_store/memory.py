"""
In-memory Feature Store.

Reference implementation of the FeatureStore interface, used by tests,
offline training jobs and single-process deployments.
"""

from typing import Dict, List, Optional, Tuple, Iterator
from collections import defaultdict
import logging

import numpy as np

from .base import FeatureStore
from ..types import (
    UserFeatures,
    ContentFeatures,
    UserContentInteraction,
    LearningPath,
    ExperimentAssignment,
)

logger = logging.getLogger(__name__)


class InMemoryFeatureStore(FeatureStore):
    """
    Dict-backed feature store.

    Content embeddings fall back to ``ContentFeatures.embedding`` when no
    explicit embedding was stored.
    """

    def __init__(self):
        self._user_features: Dict[str, UserFeatures] = {}
        self._content_features: Dict[str, ContentFeatures] = {}
        self._user_embeddings: Dict[str, np.ndarray] = {}
        self._content_embeddings: Dict[str, np.ndarray] = {}
        self._interactions: Dict[str, List[UserContentInteraction]] = defaultdict(list)
        self._learning_paths: Dict[str, LearningPath] = {}
        self._assignments: Dict[Tuple[str, str], ExperimentAssignment] = {}

    async def get_user_features(self, user_id: str) -> Optional[UserFeatures]:
        return self._user_features.get(user_id)

    async def put_user_features(self, features: UserFeatures) -> None:
        self._user_features[features.user_id] = features

    async def get_user_embedding(self, user_id: str) -> Optional[np.ndarray]:
        return self._user_embeddings.get(user_id)

    async def put_user_embedding(self, user_id: str, embedding: np.ndarray) -> None:
        self._user_embeddings[user_id] = np.asarray(embedding, dtype=np.float64)

    async def get_content_features(self, content_id: str) -> Optional[ContentFeatures]:
        return self._content_features.get(content_id)

    async def put_content_features(self, features: ContentFeatures) -> None:
        self._content_features[features.content_id] = features

    async def get_content_embedding(self, content_id: str) -> Optional[np.ndarray]:
        embedding = self._content_embeddings.get(content_id)
        if embedding is not None:
            return embedding
        features = self._content_features.get(content_id)
        if features is not None and features.embedding is not None:
            return np.asarray(features.embedding, dtype=np.float64)
        return None

    async def put_content_embedding(self, content_id: str, embedding: np.ndarray) -> None:
        self._content_embeddings[content_id] = np.asarray(embedding, dtype=np.float64)

    async def get_user_interactions(
        self,
        user_id: str,
        limit: int = 100
    ) -> List[UserContentInteraction]:
        history = self._interactions.get(user_id, [])
        ordered = sorted(history, key=lambda x: x.timestamp, reverse=True)
        return ordered[:limit]

    async def record_interaction(self, interaction: UserContentInteraction) -> None:
        self._interactions[interaction.user_id].append(interaction)

    async def get_user_learning_path(self, user_id: str) -> Optional[LearningPath]:
        path = self._learning_paths.get(user_id)
        if path is None or path.is_terminal:
            return None
        return path

    async def put_learning_path(self, path: LearningPath) -> None:
        self._learning_paths[path.user_id] = path

    async def get_experiment_assignment(
        self,
        user_id: str,
        experiment_id: str
    ) -> Optional[ExperimentAssignment]:
        return self._assignments.get((user_id, experiment_id))

    async def put_experiment_assignment(self, assignment: ExperimentAssignment) -> None:
        self._assignments[(assignment.user_id, assignment.experiment_id)] = assignment

    # ------------------------------------------------------------------
    # Offline access (training jobs)
    # ------------------------------------------------------------------

    def iter_interactions(self) -> Iterator[UserContentInteraction]:
        for history in self._interactions.values():
            yield from history

    def content_embedding_table(self) -> Dict[str, np.ndarray]:
        """All known content embeddings, explicit ones taking precedence."""
        table = {
            content_id: np.asarray(f.embedding, dtype=np.float64)
            for content_id, f in self._content_features.items()
            if f.embedding is not None
        }
        table.update(self._content_embeddings)
        return table

    def stats(self) -> Dict[str, int]:
        return {
            'users': len(self._user_features),
            'content': len(self._content_features),
            'user_embeddings': len(self._user_embeddings),
            'content_embeddings': len(self.content_embedding_table()),
            'interactions': sum(len(h) for h in self._interactions.values()),
            'learning_paths': len(self._learning_paths),
            'assignments': len(self._assignments),
        }
