"""
Learning Recommendation Ranking Package.

This package contains the hybrid ranking core for the learning platform:
- Collaborative filtering (ALS) on implicit engagement feedback
- Content-based scoring using content embeddings
- Prerequisite-aware learning path sequencing
- Learning-to-rank re-scoring
- Deterministic A/B experimentation and statistical analysis
- Offline/online evaluation and explanations

Submodules:
    types: Data model shared by every component
    feature_store: Feature Store Client interface and implementations
    model: Scoring models, hybrid engine, model registry
    experiments: Variant assignment, experiment metrics, statistics
    evaluation: Offline/online metrics, model comparison, dashboards
    explain: Recommendation explanations and transparency reports
"""

# Note: submodules are not imported here to keep import cost low.
# Import from specific submodules:
#   from learnrank.model import HybridRankingEngine
#   from learnrank.experiments import ExperimentManager

__all__ = [
    'types',
    'errors',
    'config',
    'logging_utils',
    'feature_store',
    'model',
    'experiments',
    'evaluation',
    'explain',
]

__version__ = "1.0.0"
