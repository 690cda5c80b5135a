"""
Experimentation layer.

- ExperimentManager: deterministic variant assignment
- VariantWeightsResolver: variant -> ranking weights
- ExperimentMetricsCollector: per-variant engagement metrics
- StatisticalAnalyzer: t-tests, sample sizes, winner determination
- build_experiment_report: experiment metrics endpoint payload
"""

from .manager import (
    ExperimentConfig,
    ExperimentManager,
    VariantWeightsResolver,
    assignment_hash,
    RATE_METRICS,
)
from .statistics import (
    StatisticalAnalyzer,
    VariantMetrics,
    erf_approx,
    normal_cdf,
)
from .metrics_collector import ExperimentMetricsCollector, EVENT_TYPES
from .report import build_experiment_report

__all__ = [
    'ExperimentConfig',
    'ExperimentManager',
    'VariantWeightsResolver',
    'assignment_hash',
    'RATE_METRICS',
    'StatisticalAnalyzer',
    'VariantMetrics',
    'erf_approx',
    'normal_cdf',
    'ExperimentMetricsCollector',
    'EVENT_TYPES',
    'build_experiment_report',
]
