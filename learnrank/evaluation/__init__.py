"""
Evaluation Module.

- metrics: offline ranking metrics (NDCG, MAP, Recall, Precision,
  diversity, serendipity, novelty, coverage) and OfflineEvaluator
- online: rolling-window engagement metrics over an event log
- comparison: model comparison, metrics dashboard, report generation

Example:
    >>> from learnrank.evaluation import OfflineEvaluator, RankedQuery
    >>> evaluator = OfflineEvaluator(catalog_size=500)
    >>> metrics = evaluator.evaluate([RankedQuery('q1', ['c1', 'c2'], {'c2'})])
"""

from .metrics import (
    BaseMetric,
    RecallAtK,
    PrecisionAtK,
    NDCGAtK,
    MAPAtK,
    DiversityAtK,
    SerendipityAtK,
    NoveltyAtK,
    RankedQuery,
    OfflineMetrics,
    OfflineEvaluator,
    herfindahl_diversity,
    catalog_coverage,
    recall_at_k,
    precision_at_k,
    ndcg_at_k,
    average_precision_at_k,
)
from .online import OnlineMetricsCollector, OnlineMetrics, ONLINE_EVENT_TYPES
from .comparison import ModelComparator, MetricsDashboard, ReportGenerator

__all__ = [
    # Offline
    'BaseMetric',
    'RecallAtK',
    'PrecisionAtK',
    'NDCGAtK',
    'MAPAtK',
    'DiversityAtK',
    'SerendipityAtK',
    'NoveltyAtK',
    'RankedQuery',
    'OfflineMetrics',
    'OfflineEvaluator',
    'herfindahl_diversity',
    'catalog_coverage',
    'recall_at_k',
    'precision_at_k',
    'ndcg_at_k',
    'average_precision_at_k',
    # Online
    'OnlineMetricsCollector',
    'OnlineMetrics',
    'ONLINE_EVENT_TYPES',
    # Comparison
    'ModelComparator',
    'MetricsDashboard',
    'ReportGenerator',
]
