"""
Model Comparison, Dashboard and Reporting.

This module provides tools for:
- Comparing a candidate model version against a baseline
- Alerting on offline/online metric thresholds
- Tracking metric trends across snapshots
- Writing JSON, CSV and Markdown reports

Example:
    >>> comparator = ModelComparator()
    >>> result = comparator.compare_models(baseline_metrics, candidate_metrics)
    >>> result['recommendation']
    'deploy'
    >>> dashboard = MetricsDashboard(DashboardThresholds())
    >>> summary = dashboard.build_dashboard(offline, online)
"""

from typing import Dict, List, Optional, Union, Any
from dataclasses import asdict, is_dataclass
from datetime import datetime
import json
import os
import logging

import numpy as np
import pandas as pd

from .metrics import OfflineMetrics
from .online import OnlineMetrics
from ..config import DashboardThresholds
from ..types import to_jsonable

logger = logging.getLogger(__name__)

MetricsLike = Union[OfflineMetrics, OnlineMetrics, Dict[str, float]]

COMPARED_METRICS = (
    'ndcg_at_10', 'ndcg_at_20', 'map_at_10', 'recall_at_10', 'recall_at_20',
    'precision_at_10', 'diversity', 'serendipity', 'novelty', 'coverage',
)

TREND_TOLERANCE_PCT = 2.0


def _as_dict(metrics: MetricsLike) -> Dict[str, float]:
    if is_dataclass(metrics):
        return asdict(metrics)
    return dict(metrics)


# ============================================================================
# Model Comparator
# ============================================================================

class ModelComparator:
    """
    Compare model versions on offline metrics.

    Recommendation from the mean relative improvement:
    > 10% deploy, > 0% monitor, > -5% keep, otherwise investigate.

    Example:
        >>> comparator = ModelComparator()
        >>> comparator.add_model_results('v1', v1_metrics)
        >>> comparator.add_model_results('v2', v2_metrics)
        >>> df = comparator.get_comparison_table()
    """

    def __init__(self, metrics: Optional[List[str]] = None):
        self.metrics = list(metrics or COMPARED_METRICS)
        self.model_results: Dict[str, Dict[str, float]] = {}

    def add_model_results(self, model_name: str, metrics: MetricsLike) -> None:
        self.model_results[model_name] = _as_dict(metrics)
        logger.info(f"Added results for {model_name}")

    @staticmethod
    def compute_improvement(baseline_value: float, candidate_value: float) -> Optional[float]:
        """Relative improvement in percent; None when the baseline is 0."""
        if baseline_value == 0:
            return None
        return (candidate_value - baseline_value) / abs(baseline_value) * 100

    @staticmethod
    def recommend(average_improvement: float) -> str:
        if average_improvement > 10:
            return 'deploy'
        if average_improvement > 0:
            return 'monitor'
        if average_improvement > -5:
            return 'keep'
        return 'investigate'

    def compare_models(self, baseline: MetricsLike, candidate: MetricsLike) -> Dict[str, Any]:
        base = _as_dict(baseline)
        cand = _as_dict(candidate)

        improvements = {}
        for metric in self.metrics:
            if metric in base and metric in cand:
                improvement = self.compute_improvement(base[metric], cand[metric])
                if improvement is not None:
                    improvements[metric] = improvement

        average = float(np.mean(list(improvements.values()))) if improvements else 0.0
        return {
            'improvements_pct': improvements,
            'average_improvement_pct': average,
            'recommendation': self.recommend(average),
            'improved': sorted(m for m, v in improvements.items() if v > 0),
            'regressed': sorted(m for m, v in improvements.items() if v < 0),
        }

    def get_comparison_table(self, baseline_name: Optional[str] = None) -> pd.DataFrame:
        """One row per model; optional improvement columns against a baseline."""
        rows = []
        base = self.model_results.get(baseline_name) if baseline_name else None
        for name, results in self.model_results.items():
            row = {'model': name}
            for metric in self.metrics:
                if metric not in results:
                    continue
                row[metric] = results[metric]
                if base is not None and name != baseline_name and metric in base:
                    row[f'{metric}_improvement_pct'] = self.compute_improvement(base[metric], results[metric])
            rows.append(row)
        return pd.DataFrame(rows)


# ============================================================================
# Metrics Dashboard
# ============================================================================

class MetricsDashboard:
    """
    Threshold alerts, health status and trends over metric snapshots.

    Status: critical with two or more alerts, warning with one, else healthy.
    """

    def __init__(self, thresholds: Optional[DashboardThresholds] = None):
        self.thresholds = thresholds or DashboardThresholds()
        self.history: List[Dict[str, Any]] = []

    def check_alerts(
        self,
        offline: Optional[OfflineMetrics] = None,
        online: Optional[OnlineMetrics] = None
    ) -> List[Dict[str, Any]]:
        checks = []
        if offline is not None:
            checks.append(('ndcg_at_10', offline.ndcg_at_10, self.thresholds.ndcg_at_10))
        if online is not None:
            checks.append(('ctr', online.ctr, self.thresholds.ctr))
            checks.append(('completion_rate', online.completion_rate, self.thresholds.completion_rate))

        alerts = []
        for metric, value, threshold in checks:
            if value < threshold:
                alerts.append({
                    'metric': metric,
                    'value': value,
                    'threshold': threshold,
                    'severity': 'warning',
                    'message': f"{metric} {value:.4f} below threshold {threshold:.4f}",
                })
                logger.warning(f"Metric alert: {metric}={value:.4f} < {threshold:.4f}")
        return alerts

    @staticmethod
    def get_status(alerts: List[Dict[str, Any]]) -> str:
        if len(alerts) >= 2:
            return 'critical'
        if len(alerts) == 1:
            return 'warning'
        return 'healthy'

    def record_snapshot(
        self,
        offline: Optional[OfflineMetrics] = None,
        online: Optional[OnlineMetrics] = None,
        timestamp: Optional[datetime] = None
    ) -> Dict[str, Any]:
        snapshot = {'timestamp': timestamp or datetime.now()}
        if offline is not None:
            snapshot.update({f'offline_{k}': v for k, v in asdict(offline).items()})
        if online is not None:
            snapshot.update({f'online_{k}': v for k, v in asdict(online).items()})
        self.history.append(snapshot)
        return snapshot

    def trend(self, metric: str) -> str:
        """'improving', 'declining' or 'stable' between the last two snapshots."""
        values = [s[metric] for s in self.history if metric in s]
        if len(values) < 2 or values[-2] == 0:
            return 'stable'
        change_pct = (values[-1] - values[-2]) / abs(values[-2]) * 100
        if change_pct > TREND_TOLERANCE_PCT:
            return 'improving'
        if change_pct < -TREND_TOLERANCE_PCT:
            return 'declining'
        return 'stable'

    def history_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.history)

    def build_dashboard(
        self,
        offline: Optional[OfflineMetrics] = None,
        online: Optional[OnlineMetrics] = None,
        timestamp: Optional[datetime] = None
    ) -> Dict[str, Any]:
        snapshot = self.record_snapshot(offline, online, timestamp)
        alerts = self.check_alerts(offline, online)
        trends = {k: self.trend(k) for k in snapshot if k != 'timestamp'}
        return {
            'timestamp': snapshot['timestamp'].isoformat(),
            'status': self.get_status(alerts),
            'alerts': alerts,
            'offline': asdict(offline) if offline else None,
            'online': asdict(online) if online else None,
            'trends': trends,
        }


# ============================================================================
# Report Generator
# ============================================================================

class ReportGenerator:
    """
    Generate evaluation reports in various formats.

    Example:
        >>> generator = ReportGenerator(output_dir='reports')
        >>> generator.generate_csv(comparator.get_comparison_table('v1'), 'comparison.csv')
        >>> generator.generate_markdown(dashboard.build_dashboard(offline, online))
    """

    def __init__(self, output_dir: str = 'reports'):
        self.output_dir = output_dir
        os.makedirs(output_dir, exist_ok=True)

    def generate_csv(self, df: pd.DataFrame, filename: str = 'evaluation_summary.csv') -> str:
        output_path = os.path.join(self.output_dir, filename)
        df.to_csv(output_path, index=False)
        logger.info(f"CSV report saved to {output_path}")
        return output_path

    def generate_json(self, results: Dict[str, Any], filename: str = 'evaluation_report.json') -> str:
        output_path = os.path.join(self.output_dir, filename)
        clean_results = to_jsonable(results)
        clean_results['generated_at'] = datetime.now().isoformat()

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(clean_results, f, indent=2, ensure_ascii=False)

        logger.info(f"JSON report saved to {output_path}")
        return output_path

    def generate_markdown(self, dashboard: Dict[str, Any], filename: str = 'dashboard.md') -> str:
        output_path = os.path.join(self.output_dir, filename)

        lines = [
            "# Recommendation Metrics Dashboard",
            "",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            f"**Status:** {dashboard.get('status', 'unknown')}",
            "",
        ]

        alerts = dashboard.get('alerts') or []
        if alerts:
            lines.extend(["## Alerts", ""])
            lines.extend(f"- {alert['message']}" for alert in alerts)
            lines.append("")

        for section in ('offline', 'online'):
            values = dashboard.get(section)
            if not values:
                continue
            lines.extend([
                f"## {section.capitalize()} Metrics",
                "",
                "| Metric | Value | Trend |",
                "|--------|-------|-------|",
            ])
            for metric, value in values.items():
                trend = dashboard.get('trends', {}).get(f'{section}_{metric}', '')
                shown = f"{value:.4f}" if isinstance(value, float) else str(value)
                lines.append(f"| {metric} | {shown} | {trend} |")
            lines.append("")

        with open(output_path, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines))

        logger.info(f"Markdown report saved to {output_path}")
        return output_path
