"""
Scoring interface shared by every ranking signal.

The hybrid engine only talks to ``ScoringModel``; CF, content-based,
learning-path and quality-prior scorers are interchangeable behind it.
"""

from typing import Dict, List, Optional, Any, Sequence
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np

from ..types import ContentFeatures, UserFeatures, NEUTRAL_SCORE


@dataclass
class UserContext:
    """
    Read-only snapshot of everything known about a user for one request.

    Built once by the inference service and shared by all scorers.
    """
    user_id: str
    embedding: Optional[np.ndarray] = None
    features: Optional[UserFeatures] = None
    completed_ids: frozenset = field(default_factory=frozenset)
    performance: Dict[str, float] = field(default_factory=dict)
    content_features: Dict[str, ContentFeatures] = field(default_factory=dict)

    @property
    def has_history(self) -> bool:
        return bool(self.completed_ids) or bool(self.performance)

    @property
    def is_cold_start(self) -> bool:
        return self.features is None and not self.has_history


class ScoringModel(ABC):
    """
    One ranking signal.

    ``predict`` returns a score in [0, 1] or None when the model has no
    opinion about the pair (cold start); callers substitute the neutral
    score for None.
    """

    name: str = 'signal'

    @abstractmethod
    def predict(self, user: UserContext, content_id: str) -> Optional[float]:
        pass

    def score_many(self, user: UserContext, content_ids: Sequence[str]) -> Dict[str, float]:
        """Score several candidates, neutral for unknown pairs."""
        scores = {}
        for content_id in content_ids:
            score = self.predict(user, content_id)
            scores[content_id] = NEUTRAL_SCORE if score is None else score
        return scores

    def get_info(self) -> Dict[str, Any]:
        return {'name': self.name, 'type': self.__class__.__name__}


class QualityPriorModel(ScoringModel):
    """Editorial/assessed quality of the content, independent of the user."""

    name = 'quality_prior'

    def predict(self, user: UserContext, content_id: str) -> Optional[float]:
        features = user.content_features.get(content_id)
        if features is None:
            return None
        return float(np.clip(features.quality_score, 0.0, 1.0))


def clamp_unit(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def ordered_unique(ids: Sequence[str]) -> List[str]:
    """Drop duplicate ids, keeping first occurrence order."""
    return list(dict.fromkeys(ids))
