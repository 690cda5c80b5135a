"""
Experiment metrics report.

Combines per-variant metrics, the winner decision against control and the
sample size still needed into one JSON-ready dict.
"""

from typing import Dict, Optional, Any
from datetime import datetime
import logging

from .manager import ExperimentManager
from .metrics_collector import ExperimentMetricsCollector
from .statistics import StatisticalAnalyzer, VariantMetrics
from ..errors import ValidationError
from ..types import CONTROL_VARIANT

logger = logging.getLogger(__name__)


def build_experiment_report(
    manager: ExperimentManager,
    collector: ExperimentMetricsCollector,
    analyzer: StatisticalAnalyzer,
    experiment_id: str,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Report for one experiment.

    The control arm is the experiment's ``control`` variant (or its first
    variant); the best treatment is the other variant with the highest
    primary metric.
    """
    experiment = manager.get_experiment(experiment_id)
    if experiment is None:
        raise ValidationError(f"Unknown experiment: {experiment_id}")

    metrics = collector.get_experiment_metrics(experiment_id, now)
    for variant in experiment.variants:
        metrics.setdefault(variant, VariantMetrics(variant=variant))

    control_name = CONTROL_VARIANT if CONTROL_VARIANT in experiment.variants else experiment.variants[0]
    control = metrics[control_name]
    treatments = [metrics[v] for v in experiment.variants if v != control_name]
    metric = experiment.primary_metric

    report: Dict[str, Any] = {
        'experiment': experiment.to_dict(),
        'variants': {v: metrics[v].to_dict() for v in experiment.variants},
        'control_variant': control_name,
        'best_treatment': None,
        'decision': None,
        'required_sample_size': None,
        'generated_at': (now or datetime.now()).isoformat(),
    }

    if treatments:
        best = max(treatments, key=lambda m: (getattr(m, metric), m.variant))
        report['best_treatment'] = best.variant
        report['decision'] = analyzer.determine_winner(
            control, best, primary_metric=metric, min_sample_size=experiment.min_sample_size
        )

    baseline = getattr(control, metric)
    min_effect = baseline * analyzer.practical_significance
    if 0 < baseline and baseline + min_effect < 1:
        report['required_sample_size'] = analyzer.calculate_required_sample_size(
            baseline, min_effect, alpha=analyzer.significance_level, beta=1 - analyzer.power
        )

    logger.info(
        f"Experiment report {experiment_id}: "
        f"{report['decision']['winner'] if report['decision'] else 'no treatments'}"
    )
    return report
