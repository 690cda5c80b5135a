"""
Feature Store Client interface.

The ranking core consumes storage only through this interface. Every
getter returns None (or an empty collection) on a miss and never raises
for "not found"; implementations raise FeatureStoreError for I/O failures
so that the inference service can surface a retryable error.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Iterable
from abc import ABC, abstractmethod
import asyncio

import numpy as np

from ..types import (
    UserFeatures,
    ContentFeatures,
    UserContentInteraction,
    LearningPath,
    ExperimentAssignment,
)


async def gather_present(
    keys: Iterable[str],
    getter: Callable[[str], Awaitable[Optional[Any]]]
) -> Dict[str, Any]:
    """Run `getter` for every key concurrently; misses are left out."""
    keys = list(dict.fromkeys(keys))
    values = await asyncio.gather(*(getter(key) for key in keys))
    return {key: value for key, value in zip(keys, values) if value is not None}


class FeatureStore(ABC):
    """
    Async Feature Store Client.

    The batch getters default to concurrent single-key lookups; backends
    with a native multi-key fetch should override them.
    """

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_user_features(self, user_id: str) -> Optional[UserFeatures]:
        pass

    @abstractmethod
    async def put_user_features(self, features: UserFeatures) -> None:
        pass

    async def batch_get_user_features(
        self,
        user_ids: Iterable[str]
    ) -> Dict[str, UserFeatures]:
        """Fetch several users; missing ids are absent from the result."""
        return await gather_present(user_ids, self.get_user_features)

    @abstractmethod
    async def get_user_embedding(self, user_id: str) -> Optional[np.ndarray]:
        pass

    @abstractmethod
    async def put_user_embedding(self, user_id: str, embedding: np.ndarray) -> None:
        pass

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_content_features(self, content_id: str) -> Optional[ContentFeatures]:
        pass

    @abstractmethod
    async def put_content_features(self, features: ContentFeatures) -> None:
        pass

    async def batch_get_content_features(
        self,
        content_ids: Iterable[str]
    ) -> Dict[str, ContentFeatures]:
        return await gather_present(content_ids, self.get_content_features)

    @abstractmethod
    async def get_content_embedding(self, content_id: str) -> Optional[np.ndarray]:
        pass

    @abstractmethod
    async def put_content_embedding(self, content_id: str, embedding: np.ndarray) -> None:
        pass

    async def batch_get_content_embeddings(
        self,
        content_ids: Iterable[str]
    ) -> Dict[str, np.ndarray]:
        return await gather_present(content_ids, self.get_content_embedding)

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_user_interactions(
        self,
        user_id: str,
        limit: int = 100
    ) -> List[UserContentInteraction]:
        """Most recent interactions first."""
        pass

    @abstractmethod
    async def record_interaction(self, interaction: UserContentInteraction) -> None:
        pass

    # ------------------------------------------------------------------
    # Learning paths and experiments
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_user_learning_path(self, user_id: str) -> Optional[LearningPath]:
        """The user's active (non-terminal) path, if any."""
        pass

    @abstractmethod
    async def put_learning_path(self, path: LearningPath) -> None:
        pass

    @abstractmethod
    async def get_experiment_assignment(
        self,
        user_id: str,
        experiment_id: str
    ) -> Optional[ExperimentAssignment]:
        pass

    @abstractmethod
    async def put_experiment_assignment(self, assignment: ExperimentAssignment) -> None:
        pass
