"""
Experiment metrics collection.

Append-only event log per experiment, aggregated per variant with pandas:
CTR, completion rate, average session length, 7-day retention, average
learning gain, category diversity and a confidence interval on CTR.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, timedelta
import threading
import logging

import pandas as pd

from .statistics import StatisticalAnalyzer, VariantMetrics
from ..errors import ValidationError
from ..evaluation.metrics import herfindahl_diversity

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    'impression',
    'click',
    'content_started',
    'content_completed',
    'session_end',
    'assessment_completed',
)

_COLUMNS = [
    'experiment_id', 'user_id', 'variant', 'event_type', 'timestamp',
    'content_id', 'category', 'duration_seconds', 'score_improvement',
]


def _ratio(numerator: float, denominator: float) -> float:
    return min(1.0, numerator / denominator) if denominator > 0 else 0.0


class ExperimentMetricsCollector:
    """
    Records experiment events and computes per-variant metrics.

    Example:
        >>> collector = ExperimentMetricsCollector()
        >>> collector.record_event('exp1', 'u1', 'control', 'impression', {'content_id': 'c1'})
        >>> collector.record_event('exp1', 'u1', 'control', 'click', {'content_id': 'c1'})
        >>> collector.get_experiment_metrics('exp1')['control'].ctr
        1.0
    """

    def __init__(
        self,
        analyzer: Optional[StatisticalAnalyzer] = None,
        retention_days: int = 7
    ):
        self.analyzer = analyzer or StatisticalAnalyzer()
        self.retention_days = retention_days
        self._events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record_event(
        self,
        experiment_id: str,
        user_id: str,
        variant: str,
        event_type: str,
        properties: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown experiment event type: {event_type}")
        properties = properties or {}
        event = {
            'experiment_id': experiment_id,
            'user_id': user_id,
            'variant': variant,
            'event_type': event_type,
            'timestamp': timestamp or datetime.now(),
            'content_id': properties.get('content_id'),
            'category': properties.get('category'),
            'duration_seconds': properties.get('duration_seconds'),
            'score_improvement': properties.get('score_improvement'),
        }
        with self._lock:
            self._events.append(event)

    def event_count(self, experiment_id: Optional[str] = None) -> int:
        with self._lock:
            if experiment_id is None:
                return len(self._events)
            return sum(1 for e in self._events if e['experiment_id'] == experiment_id)

    def _frame(self, experiment_id: str) -> pd.DataFrame:
        with self._lock:
            rows = [e for e in self._events if e['experiment_id'] == experiment_id]
        return pd.DataFrame(rows, columns=_COLUMNS)

    def _variant_metrics(self, variant: str, df: pd.DataFrame, now: datetime) -> VariantMetrics:
        counts = df['event_type'].value_counts()
        impressions = int(counts.get('impression', 0))
        clicks = int(counts.get('click', 0))
        starts = int(counts.get('content_started', 0))
        completions = int(counts.get('content_completed', 0))

        sessions = pd.to_numeric(
            df.loc[df['event_type'] == 'session_end', 'duration_seconds'], errors='coerce'
        ).dropna()
        gains = pd.to_numeric(
            df.loc[df['event_type'] == 'assessment_completed', 'score_improvement'], errors='coerce'
        ).dropna()

        total_users = df['user_id'].nunique()
        window_start = now - timedelta(days=self.retention_days)
        recent_users = df.loc[df['timestamp'] >= window_start, 'user_id'].nunique()

        categories = df.loc[df['event_type'] == 'impression', 'category'].dropna().tolist()
        ctr = _ratio(clicks, impressions)

        return VariantMetrics(
            variant=variant,
            sample_size=int(total_users),
            impressions=impressions,
            clicks=clicks,
            starts=starts,
            completions=completions,
            ctr=ctr,
            completion_rate=_ratio(completions, starts),
            avg_session_length=float(sessions.mean()) if len(sessions) else 0.0,
            retention_7_day=_ratio(recent_users, total_users),
            avg_learning_gain=float(gains.mean()) if len(gains) else 0.0,
            diversity=herfindahl_diversity(categories),
            ctr_confidence_interval=self.analyzer.confidence_interval(ctr, impressions),
        )

    def get_experiment_metrics(
        self,
        experiment_id: str,
        now: Optional[datetime] = None
    ) -> Dict[str, VariantMetrics]:
        """Variant -> metrics for every variant that produced events."""
        df = self._frame(experiment_id)
        if df.empty:
            return {}
        now = now or datetime.now()
        return {
            str(variant): self._variant_metrics(str(variant), group, now)
            for variant, group in df.groupby('variant', sort=True)
        }

    def get_variant_metrics(
        self,
        experiment_id: str,
        variant: str,
        now: Optional[datetime] = None
    ) -> VariantMetrics:
        metrics = self.get_experiment_metrics(experiment_id, now)
        return metrics.get(variant, VariantMetrics(variant=variant))
