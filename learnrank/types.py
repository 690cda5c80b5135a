"""
Data Model for the Ranking Core.

This module defines the records exchanged between the feature store,
the scoring models, the experiment layer and the inference service:
- UserFeatures, ContentFeatures, UserContentInteraction
- LearningPath, ExperimentAssignment
- RankingWeights, RankingScores
- RecommendationExplanation and the request/response envelopes

Example:
    >>> from learnrank.types import RankingWeights
    >>> weights = RankingWeights(0.35, 0.35, 0.2, 0.1)
    >>> weights.as_dict()['collaborative']
    0.35
"""

from typing import Dict, List, Optional, Any, FrozenSet
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
import hashlib
import json

import numpy as np

from .errors import ConfigurationError

WEIGHT_TOLERANCE = 1e-6
NEUTRAL_SCORE = 0.5


def to_jsonable(obj: Any) -> Any:
    """Convert numpy types, enums and datetimes to native Python types for JSON."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, dict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in obj]
    return obj


# ============================================================================
# Enums
# ============================================================================

class ContentModality(str, Enum):
    VIDEO = 'video'
    TEXT = 'text'
    INTERACTIVE = 'interactive'
    AUDIO = 'audio'
    QUIZ = 'quiz'


class CompletionStatus(str, Enum):
    NOT_STARTED = 'not_started'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    ABANDONED = 'abandoned'


class PathStatus(str, Enum):
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class ExperimentStatus(str, Enum):
    PLANNING = 'planning'
    RUNNING = 'running'
    COMPLETED = 'completed'
    ARCHIVED = 'archived'


CONTROL_VARIANT = 'control'


# ============================================================================
# Features
# ============================================================================

@dataclass
class UserFeatures:
    """Aggregated learner features produced by the offline feature pipeline."""
    user_id: str
    completion_rate: float = 0.0
    avg_dwell_time: float = 0.0
    success_failure_ratio: float = 0.0
    learning_velocity: float = 0.0
    topic_affinity: Dict[str, float] = field(default_factory=dict)
    preferred_modality: Optional[ContentModality] = None
    engagement_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass
class ContentFeatures:
    """Per-version content descriptors. Treat as immutable."""
    content_id: str
    embedding: Optional[List[float]] = None
    difficulty_level: int = 1
    quality_score: float = NEUTRAL_SCORE
    modality: ContentModality = ContentModality.TEXT
    prerequisites: FrozenSet[str] = field(default_factory=frozenset)
    completion_rate: float = 0.0
    engagement_rate: float = 0.0
    assessment_pass_rate: float = 0.0
    topics: List[str] = field(default_factory=list)
    category: Optional[str] = None
    popularity: float = 0.0

    def __post_init__(self):
        self.prerequisites = frozenset(self.prerequisites)
        if not 1 <= self.difficulty_level <= 4:
            raise ValueError(f"difficulty_level must be in 1..4, got {self.difficulty_level}")

    def to_dict(self) -> Dict[str, Any]:
        data = to_jsonable(asdict(self))
        data['prerequisites'] = sorted(self.prerequisites)
        return data


@dataclass
class UserContentInteraction:
    """One row of the append-only interaction log."""
    user_id: str
    content_id: str
    implicit_feedback: float
    timestamp: datetime = field(default_factory=datetime.now)
    explicit_rating: Optional[float] = None
    completion_status: CompletionStatus = CompletionStatus.NOT_STARTED
    time_spent: float = 0.0
    performance_score: Optional[float] = None

    def __post_init__(self):
        if self.implicit_feedback < 0:
            raise ValueError("implicit_feedback must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


# ============================================================================
# Learning Paths and Experiments
# ============================================================================

@dataclass
class LearningPath:
    """Ordered content sequence owned by one learner."""
    path_id: str
    user_id: str
    content_sequence: List[str]
    current_step: int = 0
    status: PathStatus = PathStatus.ACTIVE
    performance_metrics: Dict[str, float] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if self.content_sequence and not 0 <= self.current_step < len(self.content_sequence):
            raise ValueError(
                f"current_step {self.current_step} out of range for path of "
                f"length {len(self.content_sequence)}"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in (PathStatus.COMPLETED, PathStatus.CANCELLED)

    @property
    def current_content_id(self) -> Optional[str]:
        if not self.content_sequence:
            return None
        return self.content_sequence[self.current_step]

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass
class ExperimentAssignment:
    """Stable (user, experiment) -> variant mapping."""
    user_id: str
    experiment_id: str
    variant: str
    cohort_id: Optional[str] = None   # None outside a running experiment
    assigned_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


# ============================================================================
# Ranking
# ============================================================================

@dataclass(frozen=True)
class RankingWeights:
    """
    Hybrid weights for one experiment variant.

    The four signal weights must be non-negative and sum to 1.0; anything
    else is a configuration error. ``ltr_blend_alpha`` is the share of the
    final score taken from the learning-to-rank model.
    """
    collaborative: float
    content_based: float
    learning_path: float
    quality_prior: float
    ltr_blend_alpha: float = 0.0

    def __post_init__(self):
        components = self.components()
        for name, value in components.items():
            if value < 0:
                raise ConfigurationError(
                    f"Ranking weight '{name}' must be non-negative, got {value}",
                    details=self.as_dict(),
                )
        total = sum(components.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigurationError(
                f"Ranking weights must sum to 1.0, got {total:.6f}",
                details=self.as_dict(),
            )
        if not 0.0 <= self.ltr_blend_alpha <= 1.0:
            raise ConfigurationError(
                f"ltr_blend_alpha must be in [0, 1], got {self.ltr_blend_alpha}",
                details=self.as_dict(),
            )

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> 'RankingWeights':
        return cls(
            collaborative=float(data.get('collaborative', data.get('cf', 0.0))),
            content_based=float(data.get('content_based', data.get('cb', 0.0))),
            learning_path=float(data.get('learning_path', data.get('lp', 0.0))),
            quality_prior=float(data.get('quality_prior', data.get('quality', 0.0))),
            ltr_blend_alpha=float(data.get('ltr_blend_alpha', data.get('alpha', 0.0))),
        )

    def components(self) -> Dict[str, float]:
        """Signal weights in the fixed summation order."""
        return {
            'collaborative': self.collaborative,
            'content_based': self.content_based,
            'learning_path': self.learning_path,
            'quality_prior': self.quality_prior,
        }

    def as_dict(self) -> Dict[str, float]:
        data = self.components()
        data['ltr_blend_alpha'] = self.ltr_blend_alpha
        return data


SIGNALS = ('collaborative', 'content_based', 'learning_path', 'quality_prior')


@dataclass
class RankingScores:
    """Per-candidate component, hybrid and final scores."""
    content_id: str
    collaborative: float = NEUTRAL_SCORE
    content_based: float = NEUTRAL_SCORE
    learning_path: float = NEUTRAL_SCORE
    quality_prior: float = NEUTRAL_SCORE
    hybrid_score: float = NEUTRAL_SCORE
    ltr_score: Optional[float] = None
    final_score: float = NEUTRAL_SCORE

    def components(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SIGNALS}

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


# ============================================================================
# Explanations
# ============================================================================

@dataclass
class FeatureAttribution:
    feature: str
    importance: float
    contribution: str


@dataclass
class RecommendationExplanation:
    """Human-readable rationale built from the ranking signals."""
    primary_reason: str
    supporting_signals: List[str] = field(default_factory=list)
    feature_attributions: List[FeatureAttribution] = field(default_factory=list)
    similarity_trace: Optional[List[Dict[str, Any]]] = None
    confidence: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


# ============================================================================
# Request / Response
# ============================================================================

@dataclass
class RecommendationContext:
    timestamp: datetime = field(default_factory=datetime.now)
    session_depth: int = 0
    learning_goal: Optional[str] = None
    device_type: Optional[str] = None
    is_first_session: bool = False

    def fingerprint(self) -> str:
        """Stable hash of the context, excluding the request timestamp."""
        payload = {
            'session_depth': self.session_depth,
            'learning_goal': self.learning_goal,
            'device_type': self.device_type,
            'is_first_session': self.is_first_session,
        }
        return hashlib.md5(json.dumps(payload, sort_keys=True).encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass
class RecommendationRequest:
    user_id: str
    candidate_ids: List[str]
    k: int = 10
    context: RecommendationContext = field(default_factory=RecommendationContext)
    experiment_id: Optional[str] = None
    include_explanations: bool = True


@dataclass
class RecommendedItem:
    content_id: str
    rank: int
    final_score: float
    scores: RankingScores
    variant: str = CONTROL_VARIANT
    explanation: Optional[RecommendationExplanation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'content_id': self.content_id,
            'rank': self.rank,
            'final_score': float(self.final_score),
            'scores': self.scores.to_dict(),
            'variant': self.variant,
            'explanation': self.explanation.to_dict() if self.explanation else None,
        }


@dataclass
class RecommendationResponse:
    user_id: str
    recommendations: List[RecommendedItem]
    context: RecommendationContext
    learning_path: Optional[LearningPath] = None
    experiment_id: Optional[str] = None
    variant: str = CONTROL_VARIANT
    model_version: Optional[str] = None
    is_cold_start: bool = False
    generated_at: datetime = field(default_factory=datetime.now)
    latency_ms: float = 0.0
    from_cache: bool = False

    @property
    def count(self) -> int:
        return len(self.recommendations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'recommendations': [item.to_dict() for item in self.recommendations],
            'count': self.count,
            'context': self.context.to_dict(),
            'learning_path': self.learning_path.to_dict() if self.learning_path else None,
            'experiment_id': self.experiment_id,
            'variant': self.variant,
            'model_version': self.model_version,
            'is_cold_start': self.is_cold_start,
            'generated_at': self.generated_at.isoformat(),
            'latency_ms': round(self.latency_ms, 2),
            'from_cache': self.from_cache,
        }
