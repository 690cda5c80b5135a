"""
Online engagement metrics over a raw event log.

Rolling-window aggregates computed with pandas:
- CTR (clicks / views)
- Completion rate (completions / starts)
- N-day retention (active in window / total ever active)
- Average learning gain (mean assessment score delta)
- Average session length, satisfaction, category diversity
"""

from typing import Dict, List, Optional, Any
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
import threading
import logging

import pandas as pd

from .metrics import herfindahl_diversity
from ..errors import ValidationError

logger = logging.getLogger(__name__)

ONLINE_EVENT_TYPES = ('view', 'click', 'start', 'complete', 'rating', 'assessment', 'session_end')

_COLUMNS = ['user_id', 'event_type', 'content_id', 'value', 'category', 'timestamp']


@dataclass
class OnlineMetrics:
    ctr: float = 0.0
    completion_rate: float = 0.0
    retention: float = 0.0
    avg_learning_gain: float = 0.0
    avg_session_length: float = 0.0
    satisfaction: float = 0.0
    diversity: float = 0.0
    active_users: int = 0
    total_users: int = 0
    num_events: int = 0
    window_days: int = 7

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _ratio(numerator: float, denominator: float) -> float:
    return min(1.0, numerator / denominator) if denominator > 0 else 0.0


class OnlineMetricsCollector:
    """
    Append-only engagement log with windowed aggregation.

    ``value`` carries the event payload: seconds for ``session_end``,
    score delta for ``assessment``, rating for ``rating``.

    Example:
        >>> collector = OnlineMetricsCollector(rating_scale=5.0)
        >>> collector.record_event('u1', 'view', content_id='c1')
        >>> collector.record_event('u1', 'click', content_id='c1')
        >>> collector.compute_metrics().ctr
        1.0
    """

    def __init__(self, rating_scale: float = 5.0):
        if rating_scale <= 0:
            raise ValueError("rating_scale must be positive")
        self.rating_scale = rating_scale
        self._events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record_event(
        self,
        user_id: str,
        event_type: str,
        content_id: Optional[str] = None,
        value: Optional[float] = None,
        category: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        if event_type not in ONLINE_EVENT_TYPES:
            raise ValidationError(f"Unknown event type: {event_type}")
        with self._lock:
            self._events.append({
                'user_id': user_id,
                'event_type': event_type,
                'content_id': content_id,
                'value': value,
                'category': category,
                'timestamp': timestamp or datetime.now(),
            })

    def to_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._events)
        df = pd.DataFrame(rows, columns=_COLUMNS)
        df['timestamp'] = pd.to_datetime(df['timestamp'])
        df['value'] = pd.to_numeric(df['value'], errors='coerce')
        return df

    def compute_metrics(
        self,
        now: Optional[datetime] = None,
        window_days: int = 7
    ) -> OnlineMetrics:
        """Aggregate events in ``[now - window_days, now]``."""
        now = now or datetime.now()
        df = self.to_frame()
        df = df[df['timestamp'] <= now]
        if df.empty:
            return OnlineMetrics(window_days=window_days)

        window = df[df['timestamp'] >= now - timedelta(days=window_days)]
        counts = window['event_type'].value_counts()

        def values(event_type: str) -> pd.Series:
            return window.loc[window['event_type'] == event_type, 'value'].dropna()

        sessions = values('session_end')
        gains = values('assessment')
        ratings = values('rating')
        active_users = window['user_id'].nunique()
        total_users = df['user_id'].nunique()

        metrics = OnlineMetrics(
            ctr=_ratio(counts.get('click', 0), counts.get('view', 0)),
            completion_rate=_ratio(counts.get('complete', 0), counts.get('start', 0)),
            retention=_ratio(active_users, total_users),
            avg_learning_gain=float(gains.mean()) if len(gains) else 0.0,
            avg_session_length=float(sessions.mean()) if len(sessions) else 0.0,
            satisfaction=float((ratings / self.rating_scale).clip(0, 1).mean()) if len(ratings) else 0.0,
            diversity=herfindahl_diversity(
                window.loc[window['event_type'] == 'view', 'category'].dropna()
            ),
            active_users=int(active_users),
            total_users=int(total_users),
            num_events=int(len(window)),
            window_days=window_days,
        )
        logger.debug(f"Online metrics: ctr={metrics.ctr:.4f}, completion={metrics.completion_rate:.4f}")
        return metrics

    def daily_metrics(self, now: Optional[datetime] = None, days: int = 7) -> pd.DataFrame:
        """Per-day views, clicks, CTR, starts, completions and completion rate."""
        now = now or datetime.now()
        df = self.to_frame()
        df = df[(df['timestamp'] <= now) & (df['timestamp'] >= now - timedelta(days=days))]
        columns = ['date', 'view', 'click', 'start', 'complete', 'ctr', 'completion_rate']
        if df.empty:
            return pd.DataFrame(columns=columns)

        df = df.assign(date=df['timestamp'].dt.date)
        daily = (
            df.pivot_table(index='date', columns='event_type', values='user_id', aggfunc='count', fill_value=0)
            .reindex(columns=['view', 'click', 'start', 'complete'], fill_value=0)
            .reset_index()
        )
        daily['ctr'] = daily.apply(lambda r: _ratio(r['click'], r['view']), axis=1)
        daily['completion_rate'] = daily.apply(lambda r: _ratio(r['complete'], r['start']), axis=1)
        daily.columns.name = None
        return daily[columns]
