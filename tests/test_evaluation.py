"""Tests for offline metrics, online metrics, comparison and reporting."""

from datetime import datetime, timedelta
import json
import math

import pytest

from learnrank.config import DashboardThresholds
from learnrank.evaluation import (
    DiversityAtK,
    MAPAtK,
    MetricsDashboard,
    ModelComparator,
    NoveltyAtK,
    OfflineEvaluator,
    OfflineMetrics,
    OnlineMetrics,
    OnlineMetricsCollector,
    RankedQuery,
    ReportGenerator,
    SerendipityAtK,
    average_precision_at_k,
    catalog_coverage,
    herfindahl_diversity,
    ndcg_at_k,
    precision_at_k,
    recall_at_k,
)
from learnrank.errors import ValidationError


# ============================================================================
# Offline metrics
# ============================================================================

class TestRelevanceMetrics:
    def test_perfect_ranking(self):
        ranked = ['a', 'b', 'c', 'd']
        assert ndcg_at_k(ranked, {'a', 'b'}, k=4) == pytest.approx(1.0)
        assert average_precision_at_k(ranked, {'a', 'b'}, k=4) == pytest.approx(1.0)

    def test_ndcg_value(self):
        # relevant at rank 2 only: DCG = 1/log2(3), IDCG = 1
        assert ndcg_at_k(['x', 'a', 'y'], {'a'}, k=3) == pytest.approx(1 / math.log2(3))

    def test_ndcg_bounds(self):
        ranked = [f"c{i}" for i in range(20)]
        for relevant in ({'c0'}, {'c19'}, {'c3', 'c7', 'c11'}, {'missing'}):
            assert 0.0 <= ndcg_at_k(ranked, relevant, k=10) <= 1.0

    def test_recall_and_precision(self):
        ranked = ['a', 'x', 'b', 'y']
        relevant = {'a', 'b', 'c', 'd'}
        assert recall_at_k(ranked, relevant, k=2) == pytest.approx(0.25)
        assert recall_at_k(ranked, relevant, k=4) == pytest.approx(0.5)
        assert precision_at_k(ranked, relevant, k=4) == pytest.approx(0.5)

    def test_precision_caps_k_at_list_length(self):
        assert precision_at_k(['a', 'b'], {'a'}, k=10) == pytest.approx(0.5)

    def test_average_precision(self):
        # hits at ranks 1 and 3: (1/1 + 2/3) / 2
        assert average_precision_at_k(['a', 'x', 'b'], {'a', 'b'}, k=3) == pytest.approx((1 + 2 / 3) / 2)
        assert MAPAtK(5).compute(['x', 'y'], {'a'}) == 0.0

    def test_empty_inputs(self):
        assert ndcg_at_k([], {'a'}) == 0.0
        assert recall_at_k(['a'], set()) == 0.0
        assert precision_at_k([], {'a'}) == 0.0

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            MAPAtK(0)


class TestBeyondAccuracy:
    def test_herfindahl(self):
        assert herfindahl_diversity(['a', 'a', 'a']) == 0.0
        assert herfindahl_diversity(['a', 'b', 'c', 'd']) == pytest.approx(0.75)
        assert herfindahl_diversity([]) == 0.0
        assert herfindahl_diversity([None, 'a']) == 0.0

    def test_diversity_at_k(self):
        categories = {'a': 'python', 'b': 'python', 'c': 'math'}
        assert DiversityAtK(2).compute(['a', 'b', 'c'], categories=categories) == 0.0
        assert DiversityAtK(3).compute(['a', 'b', 'c'], categories=categories) == pytest.approx(1 - (4 / 9 + 1 / 9))

    def test_serendipity(self):
        metric = SerendipityAtK(3)
        score = metric.compute(['a', 'b', 'c'], {'a', 'c'}, unexpectedness={'a': 0.2, 'c': 0.8, 'b': 1.0})
        assert score == pytest.approx(0.5)
        assert metric.compute(['a'], {'z'}, unexpectedness={'a': 1.0}) == 0.0

    def test_novelty(self):
        assert NoveltyAtK(2).compute(['a', 'b'], popularity={'a': 0.9, 'b': 0.1}) == pytest.approx(0.5)
        assert NoveltyAtK(2).compute(['a']) == pytest.approx(1.0)

    def test_coverage(self):
        assert catalog_coverage([['a', 'b'], ['b', 'c']], catalog_size=10) == pytest.approx(0.3)
        assert catalog_coverage([['a', 'b', 'c']], catalog_size=10, k=1) == pytest.approx(0.1)
        with pytest.raises(ValueError):
            catalog_coverage([], catalog_size=0)


class TestOfflineEvaluator:
    def test_evaluate(self):
        queries = [
            RankedQuery('q1', ['a', 'b', 'c'], {'a'}, categories={'a': 'x', 'b': 'y', 'c': 'z'}),
            RankedQuery('q2', ['d', 'e'], {'e'}, popularity={'d': 1.0, 'e': 1.0}),
        ]
        metrics = OfflineEvaluator(catalog_size=10).evaluate(queries)

        assert metrics.num_queries == 2
        assert metrics.recall_at_10 == pytest.approx(1.0)
        assert metrics.ndcg_at_10 == pytest.approx((1.0 + 1 / math.log2(3)) / 2)
        assert metrics.coverage == pytest.approx(0.5)
        assert metrics.diversity == pytest.approx((2 / 3) / 2)
        assert metrics.novelty == pytest.approx(0.5)

    def test_no_queries(self):
        assert OfflineEvaluator(catalog_size=5).evaluate([]) == OfflineMetrics()


# ============================================================================
# Online metrics
# ============================================================================

class TestOnlineMetrics:
    def test_windowed_metrics(self):
        now = datetime(2026, 5, 1, 12)
        collector = OnlineMetricsCollector()
        for user in ('u1', 'u2', 'u3', 'u4'):
            collector.record_event(user, 'view', content_id='c1', category='python', timestamp=now)
        collector.record_event('u1', 'click', content_id='c1', timestamp=now)
        collector.record_event('u1', 'start', content_id='c1', timestamp=now)
        collector.record_event('u2', 'start', content_id='c1', timestamp=now)
        collector.record_event('u1', 'complete', content_id='c1', timestamp=now)
        collector.record_event('u1', 'assessment', value=0.3, timestamp=now)
        collector.record_event('u2', 'assessment', value=0.1, timestamp=now)
        collector.record_event('u1', 'rating', value=4.0, timestamp=now)
        collector.record_event('u1', 'session_end', value=300, timestamp=now)
        collector.record_event('old', 'view', timestamp=now - timedelta(days=30))

        metrics = collector.compute_metrics(now=now, window_days=7)
        assert metrics.ctr == pytest.approx(0.25)
        assert metrics.completion_rate == pytest.approx(0.5)
        assert metrics.retention == pytest.approx(0.8)
        assert metrics.avg_learning_gain == pytest.approx(0.2)
        assert metrics.satisfaction == pytest.approx(0.8)
        assert metrics.avg_session_length == pytest.approx(300.0)
        assert metrics.active_users == 4
        assert metrics.total_users == 5

    def test_future_events_ignored(self):
        now = datetime(2026, 5, 1)
        collector = OnlineMetricsCollector()
        collector.record_event('u1', 'view', timestamp=now + timedelta(days=1))
        assert collector.compute_metrics(now=now).num_events == 0

    def test_unknown_event(self):
        with pytest.raises(ValidationError):
            OnlineMetricsCollector().record_event('u1', 'purchase')

    def test_daily_metrics(self):
        now = datetime(2026, 5, 3, 12)
        collector = OnlineMetricsCollector()
        collector.record_event('u1', 'view', timestamp=now - timedelta(days=1))
        collector.record_event('u1', 'click', timestamp=now - timedelta(days=1))
        collector.record_event('u2', 'view', timestamp=now)
        daily = collector.daily_metrics(now=now, days=3)
        assert list(daily['ctr']) == [1.0, 0.0]


# ============================================================================
# Comparison, dashboard, reports
# ============================================================================

class TestModelComparator:
    def test_compare(self):
        comparator = ModelComparator(metrics=['ndcg_at_10', 'recall_at_10'])
        result = comparator.compare_models(
            {'ndcg_at_10': 0.5, 'recall_at_10': 0.4},
            {'ndcg_at_10': 0.6, 'recall_at_10': 0.44},
        )
        assert result['improvements_pct']['ndcg_at_10'] == pytest.approx(20.0)
        assert result['average_improvement_pct'] == pytest.approx(15.0)
        assert result['recommendation'] == 'deploy'
        assert result['improved'] == ['ndcg_at_10', 'recall_at_10']

    @pytest.mark.parametrize("avg, expected", [(12, 'deploy'), (3, 'monitor'), (-2, 'keep'), (-9, 'investigate')])
    def test_recommendation_bands(self, avg, expected):
        assert ModelComparator.recommend(avg) == expected

    def test_zero_baseline_skipped(self):
        assert ModelComparator.compute_improvement(0.0, 0.5) is None

    def test_comparison_table(self):
        comparator = ModelComparator(metrics=['ndcg_at_10'])
        comparator.add_model_results('v1', OfflineMetrics(ndcg_at_10=0.5))
        comparator.add_model_results('v2', OfflineMetrics(ndcg_at_10=0.55))
        table = comparator.get_comparison_table('v1')
        assert list(table['model']) == ['v1', 'v2']
        assert table.loc[1, 'ndcg_at_10_improvement_pct'] == pytest.approx(10.0)


class TestMetricsDashboard:
    def test_alerts_and_status(self):
        dashboard = MetricsDashboard(DashboardThresholds(ndcg_at_10=0.7, ctr=0.05, completion_rate=0.4))
        alerts = dashboard.check_alerts(OfflineMetrics(ndcg_at_10=0.6), OnlineMetrics(ctr=0.01, completion_rate=0.5))
        assert {a['metric'] for a in alerts} == {'ndcg_at_10', 'ctr'}
        assert dashboard.get_status(alerts) == 'critical'
        assert dashboard.get_status(alerts[:1]) == 'warning'
        assert dashboard.get_status([]) == 'healthy'

    def test_trends(self):
        dashboard = MetricsDashboard()
        dashboard.record_snapshot(OfflineMetrics(ndcg_at_10=0.70, recall_at_10=0.5, coverage=0.3))
        dashboard.record_snapshot(OfflineMetrics(ndcg_at_10=0.80, recall_at_10=0.4, coverage=0.301))
        assert dashboard.trend('offline_ndcg_at_10') == 'improving'
        assert dashboard.trend('offline_recall_at_10') == 'declining'
        assert dashboard.trend('offline_coverage') == 'stable'
        assert dashboard.trend('unknown') == 'stable'
        assert len(dashboard.history_frame()) == 2

    def test_build_dashboard(self):
        dashboard = MetricsDashboard()
        summary = dashboard.build_dashboard(OfflineMetrics(ndcg_at_10=0.9), OnlineMetrics(ctr=0.1, completion_rate=0.6))
        assert summary['status'] == 'healthy'
        assert summary['offline']['ndcg_at_10'] == 0.9
        assert 'online_ctr' in summary['trends']


class TestReportGenerator:
    def test_reports(self, tmp_path):
        generator = ReportGenerator(output_dir=str(tmp_path / 'reports'))
        dashboard = MetricsDashboard().build_dashboard(OfflineMetrics(ndcg_at_10=0.2))

        json_path = generator.generate_json({'offline': OfflineMetrics(ndcg_at_10=0.2).to_dict()})
        with open(json_path, encoding='utf-8') as f:
            payload = json.load(f)
        assert payload['offline']['ndcg_at_10'] == 0.2
        assert 'generated_at' in payload

        md_path = generator.generate_markdown(dashboard)
        with open(md_path, encoding='utf-8') as f:
            text = f.read()
        assert '**Status:** warning' in text
        assert '| ndcg_at_10 | 0.2000 |' in text

        comparator = ModelComparator(metrics=['ndcg_at_10'])
        comparator.add_model_results('v1', {'ndcg_at_10': 0.2})
        csv_path = generator.generate_csv(comparator.get_comparison_table())
        assert csv_path.endswith('evaluation_summary.csv')
