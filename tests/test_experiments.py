"""Tests for variant assignment, experiment metrics and statistical analysis."""

from datetime import datetime, timedelta
import math

import numpy as np
import pytest

from learnrank.config import RankingConfig
from learnrank.errors import ConfigurationError, ValidationError
from learnrank.experiments import (
    ExperimentConfig,
    ExperimentManager,
    ExperimentMetricsCollector,
    StatisticalAnalyzer,
    VariantMetrics,
    VariantWeightsResolver,
    assignment_hash,
    build_experiment_report,
    erf_approx,
    normal_cdf,
)
from learnrank.types import ExperimentStatus, RankingWeights


@pytest.fixture
def manager():
    manager = ExperimentManager()
    manager.create_experiment(ExperimentConfig('exp1', 'Two arms', ['control', 'treatment']))
    manager.start_experiment('exp1')
    return manager


# ============================================================================
# Assignment
# ============================================================================

class TestAssignment:
    def test_assignment_is_stable(self, manager):
        variants = {manager.assign_user_to_variant('u42', 'exp1') for _ in range(100)}
        assert len(variants) == 1

    def test_stable_across_manager_instances(self, manager):
        other = ExperimentManager([ExperimentConfig('exp1', 'Two arms', ['control', 'treatment'])])
        other.start_experiment('exp1')
        for user in ('u1', 'u2', 'u42', 'someone'):
            assert other.assign_user_to_variant(user, 'exp1') == manager.assign_user_to_variant(user, 'exp1')

    def test_hash_selects_variant_and_cohort(self, manager):
        h = assignment_hash('u42', 'exp1')
        assignment = manager.get_or_create_assignment('u42', 'exp1')
        assert assignment.variant == ['control', 'treatment'][h % 2]
        assert assignment.cohort_id == f"cohort_{h // 2}"

    def test_both_arms_used(self, manager):
        variants = {manager.assign_user_to_variant(f"user_{i}", 'exp1') for i in range(200)}
        assert variants == {'control', 'treatment'}

    def test_unknown_experiment_is_control(self, manager):
        assert manager.assign_user_to_variant('u42', 'nope') == 'control'
        assert manager.get_or_create_assignment('u42', 'nope').cohort_id is None
        assert manager.get_assignment('u42', 'nope') is None

    def test_inactive_experiment_is_control(self):
        manager = ExperimentManager([ExperimentConfig('exp2', 'Planned', ['variant_a', 'variant_b'])])
        assert manager.assign_user_to_variant('u1', 'exp2') == 'control'

        manager.start_experiment('exp2')
        assert manager.assign_user_to_variant('u1', 'exp2') in ('variant_a', 'variant_b')

    def test_ended_experiment(self, manager):
        manager.end_experiment('exp1')
        assert manager.get_experiment('exp1').status == ExperimentStatus.COMPLETED
        assert manager.get_active_experiments() == []

    def test_scheduled_window(self):
        config = ExperimentConfig(
            'exp3', 'Later', ['control', 'variant_a'],
            start_date=datetime.now() + timedelta(days=1),
        )
        manager = ExperimentManager([config])
        manager.start_experiment('exp3')
        assert not config.is_running()
        assert config.is_running(datetime.now() + timedelta(days=2))

    def test_restore_assignment(self, manager):
        persisted = manager.get_or_create_assignment('u7', 'exp1')
        fresh = ExperimentManager([manager.get_experiment('exp1')])
        fresh.restore_assignment(persisted)
        assert fresh.get_assignment('u7', 'exp1') == persisted

    def test_stats(self, manager):
        for i in range(10):
            manager.assign_user_to_variant(f"u{i}", 'exp1')
        stats = manager.get_stats()
        assert stats['active'] == 1
        assert sum(stats['assignments']['exp1'].values()) == 10

    def test_invalid_configs(self, manager):
        with pytest.raises(ConfigurationError):
            manager.create_experiment(ExperimentConfig('exp1', 'Dup', ['control']))
        with pytest.raises(ConfigurationError):
            ExperimentConfig('x', 'Empty', [])
        with pytest.raises(ConfigurationError):
            ExperimentConfig('x', 'Repeated', ['control', 'control'])
        with pytest.raises(ConfigurationError):
            ExperimentConfig('x', 'Metric', ['control'], primary_metric='revenue')
        with pytest.raises(KeyError):
            manager.start_experiment('missing')


class TestWeightsResolver:
    def test_experiment_override_first(self):
        custom = RankingWeights(0.1, 0.1, 0.7, 0.1)
        experiment = ExperimentConfig(
            'exp', 'Custom', ['control', 'variant_a'], variant_weights={'variant_a': custom}
        )
        resolver = VariantWeightsResolver(RankingConfig())
        assert resolver.weights_for('variant_a', experiment) is custom
        assert resolver.weights_for('control', experiment) == RankingConfig().weights_for('control')

    def test_unknown_variant_uses_control(self):
        resolver = VariantWeightsResolver()
        assert resolver.weights_for('mystery') == resolver.weights_for('control')


# ============================================================================
# Metrics collection
# ============================================================================

class TestMetricsCollector:
    def test_variant_metrics(self):
        now = datetime(2026, 3, 1)
        collector = ExperimentMetricsCollector()
        for i in range(4):
            collector.record_event('exp1', f"u{i}", 'control', 'impression',
                                   {'content_id': 'c1', 'category': 'python' if i < 2 else 'math'}, now)
        collector.record_event('exp1', 'u0', 'control', 'click', {'content_id': 'c1'}, now)
        collector.record_event('exp1', 'u0', 'control', 'content_started', {}, now)
        collector.record_event('exp1', 'u1', 'control', 'content_started', {}, now)
        collector.record_event('exp1', 'u0', 'control', 'content_completed', {}, now)
        collector.record_event('exp1', 'u0', 'control', 'session_end', {'duration_seconds': 120}, now)
        collector.record_event('exp1', 'u1', 'control', 'session_end', {'duration_seconds': 60}, now)
        collector.record_event('exp1', 'u0', 'control', 'assessment_completed', {'score_improvement': 0.2}, now)
        collector.record_event('exp1', 'u9', 'control', 'click', {}, now - timedelta(days=30))

        metrics = collector.get_experiment_metrics('exp1', now=now)['control']
        assert metrics.sample_size == 5
        assert metrics.ctr == pytest.approx(0.5)
        assert metrics.completion_rate == pytest.approx(0.5)
        assert metrics.avg_session_length == pytest.approx(90.0)
        assert metrics.avg_learning_gain == pytest.approx(0.2)
        assert metrics.retention_7_day == pytest.approx(0.8)
        assert metrics.diversity == pytest.approx(0.5)
        low, high = metrics.ctr_confidence_interval
        assert 0.0 <= low < 0.5 < high <= 1.0

    def test_unknown_event_type(self):
        with pytest.raises(ValidationError):
            ExperimentMetricsCollector().record_event('exp1', 'u1', 'control', 'purchase')

    def test_no_events(self):
        collector = ExperimentMetricsCollector()
        assert collector.get_experiment_metrics('exp1') == {}
        assert collector.get_variant_metrics('exp1', 'control').sample_size == 0

    def test_experiments_isolated(self):
        collector = ExperimentMetricsCollector()
        collector.record_event('exp1', 'u1', 'control', 'impression')
        collector.record_event('exp2', 'u1', 'control', 'impression')
        assert collector.event_count('exp1') == 1
        assert collector.event_count() == 2


class TestExperimentReport:
    def test_report_structure(self, manager):
        collector = ExperimentMetricsCollector()
        analyzer = StatisticalAnalyzer()
        for i in range(20):
            variant = 'control' if i % 2 else 'treatment'
            collector.record_event('exp1', f"u{i}", variant, 'impression', {'category': 'python'})
            if i % 4 == 0:
                collector.record_event('exp1', f"u{i}", variant, 'click')

        report = build_experiment_report(manager, collector, analyzer, 'exp1')
        assert set(report['variants']) == {'control', 'treatment'}
        assert report['control_variant'] == 'control'
        assert report['best_treatment'] == 'treatment'
        assert report['decision']['winner'] == 'inconclusive'
        assert 'longer' in report['decision']['recommendation']
        assert report['variants']['treatment']['ctr'] == pytest.approx(0.5)

    def test_unknown_experiment(self, manager):
        with pytest.raises(ValidationError):
            build_experiment_report(manager, ExperimentMetricsCollector(), StatisticalAnalyzer(), 'nope')


# ============================================================================
# Statistics
# ============================================================================

class TestStatisticalAnalyzer:
    @pytest.fixture
    def analyzer(self):
        return StatisticalAnalyzer(significance_level=0.05)

    def test_erf_matches_math(self):
        for x in np.linspace(-3, 3, 25):
            assert erf_approx(x) == pytest.approx(math.erf(x), abs=2e-7)
        assert normal_cdf(0.0) == pytest.approx(0.5)
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)

    def test_winner_on_ctr_lift(self, analyzer):
        control = VariantMetrics('control', sample_size=5234, ctr=0.068)
        treatment = VariantMetrics('variant_a', sample_size=5198, ctr=0.074)
        result = analyzer.determine_winner(control, treatment, 'ctr', min_sample_size=1000)

        assert result['winner'] == 'treatment'
        assert result['winner_variant'] == 'variant_a'
        assert result['relative_lift'] == pytest.approx(0.0882, abs=1e-3)
        assert 0.5 < result['confidence'] < 1.0
        assert result['recommendation']

    def test_inconclusive_when_under_sampled(self, analyzer):
        control = VariantMetrics('control', sample_size=999, ctr=0.05)
        treatment = VariantMetrics('variant_a', sample_size=5000, ctr=0.10)
        result = analyzer.determine_winner(control, treatment, 'ctr', min_sample_size=1000)
        assert result['winner'] == 'inconclusive'
        assert result['confidence'] == 0.0

    def test_inconclusive_below_practical_floor(self, analyzer):
        control = VariantMetrics('control', sample_size=10 ** 6, ctr=0.100)
        treatment = VariantMetrics('variant_a', sample_size=10 ** 6, ctr=0.103)
        result = analyzer.determine_winner(control, treatment, 'ctr', min_sample_size=1000)
        assert result['winner'] == 'inconclusive'
        assert result['p_value'] < 0.05

    def test_control_wins_on_drop(self, analyzer):
        control = VariantMetrics('control', sample_size=5000, completion_rate=0.40)
        treatment = VariantMetrics('variant_b', sample_size=5000, completion_rate=0.30)
        result = analyzer.determine_winner(control, treatment, 'completion_rate', min_sample_size=1000)
        assert result['winner'] == 'control'
        assert result['winner_variant'] == 'control'

    def test_unknown_metric(self, analyzer):
        with pytest.raises(ValueError):
            analyzer.determine_winner(VariantMetrics('a'), VariantMetrics('b'), 'revenue')

    def test_t_test(self, analyzer):
        rng = np.random.default_rng(0)
        control = rng.normal(0.0, 1.0, 2000)
        shifted = rng.normal(0.3, 1.0, 2000)
        same = rng.normal(0.0, 1.0, 2000)

        assert analyzer.perform_t_test(control, shifted)['significant']
        result = analyzer.perform_t_test(control, same)
        assert 0.0 <= result['p_value'] <= 1.0

    def test_t_test_matches_exact_for_large_samples(self, analyzer):
        rng = np.random.default_rng(1)
        a, b = rng.normal(0, 1, 3000), rng.normal(0.05, 1.2, 3000)
        approx = analyzer.perform_t_test(a, b)
        exact = analyzer.welch_t_test_exact(a, b)
        assert approx['t_statistic'] == pytest.approx(exact['t_statistic'])
        assert approx['p_value'] == pytest.approx(exact['p_value'], abs=1e-3)

    def test_t_test_small_sample(self, analyzer):
        result = analyzer.perform_t_test([1.0], [2.0, 3.0])
        assert result['significant'] is False
        assert 'warning' in result

    def test_required_sample_size(self, analyzer):
        n_small_effect = analyzer.calculate_required_sample_size(0.068, 0.005)
        n_large_effect = analyzer.calculate_required_sample_size(0.068, 0.02)
        assert n_small_effect > n_large_effect > 0
        assert analyzer.calculate_required_sample_size(0.068, 0.005, alpha=0.01) > n_small_effect
        with pytest.raises(ValueError):
            analyzer.calculate_required_sample_size(0.0, 0.01)
        with pytest.raises(ValueError):
            analyzer.calculate_required_sample_size(0.5, 0.0)

    def test_confidence_interval(self, analyzer):
        low, high = analyzer.confidence_interval(0.1, 1000)
        assert low < 0.1 < high
        assert analyzer.confidence_interval(0.1, 0) == (0.0, 0.0)
        assert analyzer.confidence_interval(0.0, 100) == (0.0, 0.0)
