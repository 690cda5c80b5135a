"""
Configuration loading for the ranking core.

Settings live in ``config/ranking.yaml``; the file is chosen with the
``LEARNRANK_CONFIG`` environment variable and single values can be
overridden with ``LEARNRANK_REQUEST_TIMEOUT``, ``LEARNRANK_CACHE_TTL``
and ``LEARNRANK_LOG_DIR``.

Example:
    >>> from learnrank.config import load_config
    >>> config = load_config('config/ranking.yaml')
    >>> config.ranking.weights_for('variant_a').content_based
    0.6
"""

from typing import Dict, Optional, Any
from dataclasses import dataclass, field
from pathlib import Path
import logging
import os

import yaml

from .errors import ConfigurationError
from .types import RankingWeights, CONTROL_VARIANT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/ranking.yaml"


def _default_variant_weights() -> Dict[str, RankingWeights]:
    return {
        'control': RankingWeights(0.35, 0.35, 0.20, 0.10),
        'variant_a': RankingWeights(0.20, 0.60, 0.15, 0.05),
        'variant_b': RankingWeights(0.60, 0.20, 0.10, 0.10),
        'variant_c': RankingWeights(0.30, 0.30, 0.30, 0.10, ltr_blend_alpha=0.3),
        'variant_d': RankingWeights(0.30, 0.30, 0.25, 0.15),
    }


# ============================================================================
# Config Sections
# ============================================================================

@dataclass
class ALSConfig:
    factors: int = 100
    iterations: int = 10
    regularization: float = 0.01
    init_scale: float = 0.01
    random_state: Optional[int] = None


@dataclass
class LTRConfig:
    model_type: str = 'linear'      # linear | gbdt
    iterations: int = 100
    learning_rate: float = 0.01
    n_estimators: int = 100         # gbdt only
    max_depth: int = 3              # gbdt only


@dataclass
class LearningPathConfig:
    window: int = 5
    remedial_threshold: float = 0.5
    acceleration_threshold: float = 0.85


@dataclass
class InferenceConfig:
    request_timeout_seconds: float = 0.15
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 10000
    max_k: int = 100
    max_batch_concurrency: int = 10
    scoring_workers: int = 4
    interaction_history_limit: int = 100
    exclude_completed: bool = True


@dataclass
class StatisticsConfig:
    significance_level: float = 0.05
    min_sample_size: int = 1000
    practical_significance: float = 0.05
    power: float = 0.8


@dataclass
class DashboardThresholds:
    ndcg_at_10: float = 0.7
    ctr: float = 0.05
    completion_rate: float = 0.4


@dataclass
class RankingConfig:
    """Variant name -> hybrid weights, with control as the fallback."""
    variant_weights: Dict[str, RankingWeights] = field(default_factory=_default_variant_weights)

    def weights_for(self, variant: str) -> RankingWeights:
        if variant in self.variant_weights:
            return self.variant_weights[variant]
        logger.warning(f"No weights configured for variant '{variant}', using control")
        return self.variant_weights[CONTROL_VARIANT]


@dataclass
class LearnRankConfig:
    ranking: RankingConfig = field(default_factory=RankingConfig)
    als: ALSConfig = field(default_factory=ALSConfig)
    ltr: LTRConfig = field(default_factory=LTRConfig)
    learning_path: LearningPathConfig = field(default_factory=LearningPathConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    statistics: StatisticsConfig = field(default_factory=StatisticsConfig)
    dashboard: DashboardThresholds = field(default_factory=DashboardThresholds)
    log_dir: str = "logs"
    artifacts_dir: str = "artifacts/models"


# ============================================================================
# Loading
# ============================================================================

def _section(cls, raw: Optional[Dict[str, Any]]):
    """Build a config dataclass, ignoring unknown keys."""
    if not raw:
        return cls()
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    unknown = set(raw) - set(known)
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**known)


def _parse_ranking(raw: Optional[Dict[str, Any]]) -> RankingConfig:
    if not raw or 'variants' not in raw:
        return RankingConfig()

    variant_weights = {}
    for variant, weights in raw['variants'].items():
        try:
            variant_weights[variant] = RankingWeights.from_dict(weights)
        except ConfigurationError as e:
            raise ConfigurationError(
                f"Invalid weights for variant '{variant}': {e.message}",
                details=e.details,
            ) from e

    if CONTROL_VARIANT not in variant_weights:
        raise ConfigurationError("Ranking config must define weights for 'control'")
    return RankingConfig(variant_weights=variant_weights)


def _apply_env_overrides(config: LearnRankConfig) -> None:
    timeout = os.getenv('LEARNRANK_REQUEST_TIMEOUT')
    if timeout:
        config.inference.request_timeout_seconds = float(timeout)
    ttl = os.getenv('LEARNRANK_CACHE_TTL')
    if ttl:
        config.inference.cache_ttl_seconds = float(ttl)
    log_dir = os.getenv('LEARNRANK_LOG_DIR')
    if log_dir:
        config.log_dir = log_dir


def load_config(path: Optional[str] = None) -> LearnRankConfig:
    """
    Load configuration from YAML.

    A missing file falls back to defaults with a warning. Invalid ranking
    weights raise ConfigurationError.

    Args:
        path: YAML path (default: $LEARNRANK_CONFIG or config/ranking.yaml)

    Returns:
        LearnRankConfig
    """
    config_path = Path(path or os.getenv('LEARNRANK_CONFIG', DEFAULT_CONFIG_PATH))

    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        config = LearnRankConfig()
    else:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}

        config = LearnRankConfig(
            ranking=_parse_ranking(raw.get('ranking')),
            als=_section(ALSConfig, raw.get('als')),
            ltr=_section(LTRConfig, raw.get('ltr')),
            learning_path=_section(LearningPathConfig, raw.get('learning_path')),
            inference=_section(InferenceConfig, raw.get('inference')),
            statistics=_section(StatisticsConfig, raw.get('statistics')),
            dashboard=_section(DashboardThresholds, raw.get('dashboard')),
            log_dir=raw.get('log_dir', "logs"),
            artifacts_dir=raw.get('artifacts_dir', "artifacts/models"),
        )
        logger.info(f"Loaded config from {config_path}")

    _apply_env_overrides(config)
    return config
