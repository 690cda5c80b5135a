"""
Ranking Models.

This package provides the ranking signals and their composition:
- ScoringModel: polymorphic interface implemented by every signal
- ALSModel: collaborative filtering on implicit feedback
- ContentBasedModel: embedding cosine similarity
- LearningPathOptimizer: prerequisite-aware sequencing
- LinearRanker / GradientBoostedRanker: learning-to-rank re-scoring
- HybridRankingEngine: weighted combination with LTR blending
- ModelRegistry / ModelBundle: versioned models with atomic swap

Example:
    >>> from learnrank.model import ModelRegistry, train_bundle
    >>> registry = ModelRegistry(train_bundle(interactions, embeddings))
    >>> engine = registry.current().build_engine()
"""

from .base import ScoringModel, UserContext, QualityPriorModel
from .als import ALSModel, gaussian_elimination, build_interaction_matrix
from .content_based import ContentBasedModel, cosine_similarity
from .learning_path import LearningPathOptimizer, mastery_level
from .ltr import (
    BaseRanker,
    LinearRanker,
    GradientBoostedRanker,
    LTRExample,
    FEATURE_NAMES,
    build_ltr_features,
    create_ranker,
)
from .hybrid import HybridRankingEngine, validate_k
from .registry import (
    ModelBundle,
    ModelRegistry,
    generate_version_id,
    save_bundle,
    load_bundle,
    load_latest_bundle,
    train_bundle,
)

__all__ = [
    # Interface
    'ScoringModel',
    'UserContext',
    'QualityPriorModel',
    # Signals
    'ALSModel',
    'gaussian_elimination',
    'build_interaction_matrix',
    'ContentBasedModel',
    'cosine_similarity',
    'LearningPathOptimizer',
    'mastery_level',
    # LTR
    'BaseRanker',
    'LinearRanker',
    'GradientBoostedRanker',
    'LTRExample',
    'FEATURE_NAMES',
    'build_ltr_features',
    'create_ranker',
    # Engine
    'HybridRankingEngine',
    'validate_k',
    # Registry
    'ModelBundle',
    'ModelRegistry',
    'generate_version_id',
    'save_bundle',
    'load_bundle',
    'load_latest_bundle',
    'train_bundle',
]
