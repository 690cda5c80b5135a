"""
Learning-to-Rank re-rankers.

Two rankers share one interface:
- LinearRanker: linear model trained by batch gradient descent on squared error
- GradientBoostedRanker: scikit-learn gradient-boosted regression trees

Both predict a score clamped to [0, 1] from a fixed engineered feature
vector and expose feature importances for explanations.

Example:
    >>> ranker = LinearRanker(iterations=100, learning_rate=0.01)
    >>> ranker.train([LTRExample(features, label=0.8), ...])
    >>> ranker.re_rank({'c1': features_c1, 'c2': features_c2})
    [('c2', 0.71), ('c1', 0.64)]
"""

from typing import Dict, List, Optional, Any, Sequence, Mapping, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging

import numpy as np
from sklearn.ensemble import GradientBoostingRegressor

from .base import clamp_unit
from ..errors import InsufficientDataError
from ..types import ContentFeatures, UserFeatures, SIGNALS

logger = logging.getLogger(__name__)

FEATURE_NAMES: Tuple[str, ...] = SIGNALS + (
    'difficulty',
    'content_completion_rate',
    'content_engagement_rate',
    'assessment_pass_rate',
    'user_completion_rate',
    'user_engagement',
    'topic_affinity',
    'modality_match',
)


@dataclass
class LTRExample:
    """One labelled training row: engineered features and a relevance label in [0, 1]."""
    features: Dict[str, float]
    label: float


def build_ltr_features(
    component_scores: Mapping[str, float],
    content: Optional[ContentFeatures] = None,
    user: Optional[UserFeatures] = None
) -> Dict[str, float]:
    """
    Engineer the LTR feature vector for one candidate.

    Missing content or user features contribute zeros.
    """
    features = {name: float(component_scores.get(name, 0.5)) for name in SIGNALS}

    if content is not None:
        features['difficulty'] = (content.difficulty_level - 1) / 3.0
        features['content_completion_rate'] = content.completion_rate
        features['content_engagement_rate'] = content.engagement_rate
        features['assessment_pass_rate'] = content.assessment_pass_rate

    if user is not None:
        features['user_completion_rate'] = user.completion_rate
        features['user_engagement'] = user.engagement_score
        if content is not None:
            affinities = [user.topic_affinity.get(t, 0.0) for t in content.topics]
            features['topic_affinity'] = max(affinities) if affinities else 0.0
            features['modality_match'] = float(
                user.preferred_modality is not None and user.preferred_modality == content.modality
            )

    return {name: float(features.get(name, 0.0)) for name in FEATURE_NAMES}


class BaseRanker(ABC):
    """Common interface for learning-to-rank models."""

    def __init__(self, feature_names: Sequence[str] = FEATURE_NAMES):
        self.feature_names: List[str] = list(feature_names)
        self.is_trained = False

    def _vectorize(self, features: Mapping[str, float]) -> np.ndarray:
        return np.array([float(features.get(name, 0.0)) for name in self.feature_names])

    def _matrix(self, examples: Sequence[LTRExample]) -> Tuple[np.ndarray, np.ndarray]:
        if not examples:
            raise InsufficientDataError(f"Cannot train {self.__class__.__name__}: no training examples")
        X = np.vstack([self._vectorize(e.features) for e in examples])
        y = np.array([float(e.label) for e in examples])
        return X, y

    @abstractmethod
    def train(self, examples: Sequence[LTRExample]) -> 'BaseRanker':
        pass

    @abstractmethod
    def _raw_predict(self, X: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def feature_importance(self) -> Dict[str, float]:
        """Non-negative importance per feature."""
        pass

    def predict(self, features: Mapping[str, float]) -> float:
        """Score in [0, 1] for one feature vector."""
        if not self.is_trained:
            raise RuntimeError(f"{self.__class__.__name__} is not trained")
        raw = self._raw_predict(self._vectorize(features).reshape(1, -1))[0]
        return clamp_unit(float(raw))

    def predict_many(self, features: Mapping[str, Mapping[str, float]]) -> Dict[str, float]:
        if not features:
            return {}
        if not self.is_trained:
            raise RuntimeError(f"{self.__class__.__name__} is not trained")
        ids = list(features)
        X = np.vstack([self._vectorize(features[c]) for c in ids])
        raw = np.clip(self._raw_predict(X), 0.0, 1.0)
        return {c: float(s) for c, s in zip(ids, raw)}

    def re_rank(self, items: Mapping[str, Mapping[str, float]]) -> List[Tuple[str, float]]:
        """Order content ids by LTR score descending, ties by content id."""
        scores = self.predict_many(items)
        return sorted(scores.items(), key=lambda x: (-x[1], x[0]))

    def top_features(self, n: int = 3) -> List[Tuple[str, float]]:
        importance = self.feature_importance()
        return sorted(importance.items(), key=lambda x: (-x[1], x[0]))[:n]


class LinearRanker(BaseRanker):
    """
    Linear ranker trained by batch gradient descent.

    Args:
        iterations: Number of full-batch gradient steps
        learning_rate: Step size
    """

    def __init__(
        self,
        iterations: int = 100,
        learning_rate: float = 0.01,
        feature_names: Sequence[str] = FEATURE_NAMES
    ):
        super().__init__(feature_names)
        if iterations <= 0:
            raise ValueError(f"iterations must be positive, got {iterations}")
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")
        self.iterations = iterations
        self.learning_rate = learning_rate
        self.weights = np.zeros(len(self.feature_names))
        self.bias = 0.0
        self.loss_history: List[float] = []

    def train(self, examples: Sequence[LTRExample]) -> 'LinearRanker':
        X, y = self._matrix(examples)
        n = len(y)
        self.weights = np.zeros(X.shape[1])
        self.bias = 0.0
        self.loss_history = []

        for _ in range(self.iterations):
            error = X @ self.weights + self.bias - y
            self.weights -= self.learning_rate * (X.T @ error) / n
            self.bias -= self.learning_rate * float(error.mean())
            self.loss_history.append(float(np.mean(error ** 2)))

        self.is_trained = True
        logger.info(
            f"LinearRanker trained on {n} examples | iterations={self.iterations}, "
            f"lr={self.learning_rate}, final_mse={self.loss_history[-1]:.6f}"
        )
        return self

    def _raw_predict(self, X: np.ndarray) -> np.ndarray:
        return X @ self.weights + self.bias

    def feature_importance(self) -> Dict[str, float]:
        return {name: float(abs(w)) for name, w in zip(self.feature_names, self.weights)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'linear',
            'feature_names': self.feature_names,
            'weights': self.weights.tolist(),
            'bias': self.bias,
            'iterations': self.iterations,
            'learning_rate': self.learning_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LinearRanker':
        ranker = cls(
            iterations=data.get('iterations', 100),
            learning_rate=data.get('learning_rate', 0.01),
            feature_names=data['feature_names'],
        )
        ranker.weights = np.array(data['weights'], dtype=np.float64)
        ranker.bias = float(data['bias'])
        ranker.is_trained = True
        return ranker


class GradientBoostedRanker(BaseRanker):
    """Gradient-boosted trees behind the same ranker interface."""

    def __init__(
        self,
        n_estimators: int = 100,
        max_depth: int = 3,
        learning_rate: float = 0.1,
        random_state: Optional[int] = 42,
        feature_names: Sequence[str] = FEATURE_NAMES
    ):
        super().__init__(feature_names)
        self.model = GradientBoostingRegressor(
            n_estimators=n_estimators,
            max_depth=max_depth,
            learning_rate=learning_rate,
            random_state=random_state,
        )

    def train(self, examples: Sequence[LTRExample]) -> 'GradientBoostedRanker':
        X, y = self._matrix(examples)
        self.model.fit(X, y)
        self.is_trained = True
        logger.info(f"GradientBoostedRanker trained on {len(y)} examples")
        return self

    def _raw_predict(self, X: np.ndarray) -> np.ndarray:
        return self.model.predict(X)

    def feature_importance(self) -> Dict[str, float]:
        if not self.is_trained:
            return {name: 0.0 for name in self.feature_names}
        return {
            name: float(value)
            for name, value in zip(self.feature_names, self.model.feature_importances_)
        }


def create_ranker(model_type: str = 'linear', **params) -> BaseRanker:
    """Factory for configured rankers ('linear' or 'gbdt')."""
    if model_type == 'linear':
        return LinearRanker(
            iterations=params.get('iterations', 100),
            learning_rate=params.get('learning_rate', 0.01),
        )
    if model_type == 'gbdt':
        return GradientBoostedRanker(
            n_estimators=params.get('n_estimators', 100),
            max_depth=params.get('max_depth', 3),
        )
    raise ValueError(f"Unknown ranker type: {model_type}")
