"""
Statistical Analysis for Ranking Experiments.

This module provides:
- Welch-style two-sample t-test with a normal-approximation p-value
- Exact Welch t-test (scipy) for small samples
- Two-proportion z-test and normal confidence intervals for rates
- Required sample size for a minimum detectable effect
- Winner determination with a practical-significance floor

Example:
    >>> analyzer = StatisticalAnalyzer(significance_level=0.05)
    >>> result = analyzer.perform_t_test(control_scores, treatment_scores)
    >>> print(f"p-value: {result['p_value']:.4f}, significant: {result['significant']}")
    >>> analyzer.calculate_required_sample_size(0.068, 0.01)
"""

from typing import Dict, Optional, Tuple, Any, Sequence
from dataclasses import dataclass, field, asdict
import logging
import math

import numpy as np
from scipy import stats

from .manager import RATE_METRICS
from ..config import StatisticsConfig

logger = logging.getLogger(__name__)

# Abramowitz & Stegun 7.1.26
_ERF_A1 = 0.254829592
_ERF_A2 = -0.284496736
_ERF_A3 = 1.421413741
_ERF_A4 = -1.453152027
_ERF_A5 = 1.061405429
_ERF_P = 0.3275911


def erf_approx(x: float) -> float:
    """Error function, polynomial approximation (max error 1.5e-7)."""
    sign = -1.0 if x < 0 else 1.0
    x = abs(x)
    t = 1.0 / (1.0 + _ERF_P * x)
    poly = ((((_ERF_A5 * t + _ERF_A4) * t + _ERF_A3) * t + _ERF_A2) * t + _ERF_A1) * t
    return sign * (1.0 - poly * math.exp(-x * x))


def normal_cdf(x: float) -> float:
    """Standard normal CDF via ``erf_approx``."""
    return 0.5 * (1.0 + erf_approx(x / math.sqrt(2.0)))


def two_sided_p_value(statistic: float) -> float:
    return max(0.0, min(1.0, 2.0 * (1.0 - normal_cdf(abs(statistic)))))


@dataclass
class VariantMetrics:
    """Aggregated engagement metrics of one experiment arm."""
    variant: str
    sample_size: int = 0
    impressions: int = 0
    clicks: int = 0
    starts: int = 0
    completions: int = 0
    ctr: float = 0.0
    completion_rate: float = 0.0
    avg_session_length: float = 0.0
    retention_7_day: float = 0.0
    avg_learning_gain: float = 0.0
    diversity: float = 0.0
    ctr_confidence_interval: Tuple[float, float] = (0.0, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['ctr_confidence_interval'] = list(self.ctr_confidence_interval)
        return data


class StatisticalAnalyzer:
    """
    Hypothesis testing and winner determination for experiments.

    Args:
        significance_level: P-value threshold for significance
        practical_significance: Minimum relative lift worth acting on
        min_sample_size: Users per arm required before a winner is named
        power: Target power for sample size planning
    """

    def __init__(
        self,
        significance_level: float = 0.05,
        practical_significance: float = 0.05,
        min_sample_size: int = 1000,
        power: float = 0.8
    ):
        self.significance_level = significance_level
        self.practical_significance = practical_significance
        self.min_sample_size = min_sample_size
        self.power = power

    @classmethod
    def from_config(cls, config: StatisticsConfig) -> "StatisticalAnalyzer":
        return cls(
            significance_level=config.significance_level,
            practical_significance=config.practical_significance,
            min_sample_size=config.min_sample_size,
            power=config.power,
        )

    # ------------------------------------------------------------------
    # Tests
    # ------------------------------------------------------------------

    def perform_t_test(
        self,
        control: Sequence[float],
        treatment: Sequence[float]
    ) -> Dict[str, Any]:
        """
        Welch two-sample t-test with a normal-CDF p-value.

        The normal approximation is accurate for the large samples
        (>= 1000 per arm) experiments run with.

        Returns:
            Dict with t_statistic, p_value, significant and sample summaries
        """
        control = np.asarray(control, dtype=np.float64)
        treatment = np.asarray(treatment, dtype=np.float64)

        if len(control) < 2 or len(treatment) < 2:
            logger.warning("Sample size too small for t-test")
            return {
                't_statistic': np.nan,
                'p_value': np.nan,
                'significant': False,
                'n_control': len(control),
                'n_treatment': len(treatment),
                'warning': 'Sample size too small',
            }

        mean_c, mean_t = float(control.mean()), float(treatment.mean())
        var_c, var_t = float(control.var(ddof=1)), float(treatment.var(ddof=1))
        se = math.sqrt(var_c / len(control) + var_t / len(treatment))
        diff = mean_t - mean_c

        if se > 0:
            t_stat = diff / se
        else:
            t_stat = 0.0 if diff == 0 else math.copysign(math.inf, diff)

        p_value = two_sided_p_value(t_stat)
        return {
            't_statistic': t_stat,
            'p_value': p_value,
            'significant': p_value < self.significance_level,
            'control_mean': mean_c,
            'treatment_mean': mean_t,
            'mean_diff': diff,
            'standard_error': se,
            'n_control': len(control),
            'n_treatment': len(treatment),
        }

    def welch_t_test_exact(
        self,
        control: Sequence[float],
        treatment: Sequence[float]
    ) -> Dict[str, Any]:
        """Welch t-test with exact t-distribution p-value (small samples)."""
        control = np.asarray(control, dtype=np.float64)
        treatment = np.asarray(treatment, dtype=np.float64)
        if len(control) < 2 or len(treatment) < 2:
            logger.warning("Sample size too small for t-test")
            return {'t_statistic': np.nan, 'p_value': np.nan, 'significant': False}

        t_stat, p_value = stats.ttest_ind(treatment, control, equal_var=False)
        return {
            't_statistic': float(t_stat),
            'p_value': float(p_value),
            'significant': bool(p_value < self.significance_level),
        }

    def two_proportion_z_test(
        self,
        control_rate: float,
        control_n: int,
        treatment_rate: float,
        treatment_n: int
    ) -> Dict[str, Any]:
        """Pooled two-proportion z-test."""
        if control_n <= 0 or treatment_n <= 0:
            return {'z_statistic': np.nan, 'p_value': np.nan, 'significant': False}

        pooled = (control_rate * control_n + treatment_rate * treatment_n) / (control_n + treatment_n)
        se = math.sqrt(pooled * (1 - pooled) * (1 / control_n + 1 / treatment_n))
        diff = treatment_rate - control_rate
        if se > 0:
            z = diff / se
        else:
            z = 0.0 if diff == 0 else math.copysign(math.inf, diff)

        p_value = two_sided_p_value(z)
        return {
            'z_statistic': z,
            'p_value': p_value,
            'significant': p_value < self.significance_level,
        }

    # ------------------------------------------------------------------
    # Intervals and power
    # ------------------------------------------------------------------

    def confidence_interval(
        self,
        rate: float,
        n: int,
        confidence: float = 0.95
    ) -> Tuple[float, float]:
        """Normal-approximation interval for a proportion, clipped to [0, 1]."""
        if n <= 0:
            return (0.0, 0.0)
        z = float(stats.norm.ppf(1 - (1 - confidence) / 2))
        margin = z * math.sqrt(max(rate * (1 - rate), 0.0) / n)
        return (max(0.0, rate - margin), min(1.0, rate + margin))

    def calculate_required_sample_size(
        self,
        baseline_rate: float,
        min_effect: float,
        alpha: float = 0.05,
        beta: float = 0.2
    ) -> int:
        """
        Users per arm needed to detect an absolute lift of ``min_effect``.

        n = (z_{1-alpha/2} + z_{1-beta})^2 * (p1(1-p1) + p2(1-p2)) / min_effect^2
        """
        if not 0 < baseline_rate < 1:
            raise ValueError(f"baseline_rate must be in (0, 1), got {baseline_rate}")
        if min_effect <= 0:
            raise ValueError(f"min_effect must be positive, got {min_effect}")
        if baseline_rate + min_effect >= 1:
            raise ValueError("baseline_rate + min_effect must be below 1")
        if not 0 < alpha < 1 or not 0 < beta < 1:
            raise ValueError("alpha and beta must be in (0, 1)")

        z_alpha = float(stats.norm.ppf(1 - alpha / 2))
        z_beta = float(stats.norm.ppf(1 - beta))
        p1 = baseline_rate
        p2 = baseline_rate + min_effect
        variance = p1 * (1 - p1) + p2 * (1 - p2)
        return int(math.ceil((z_alpha + z_beta) ** 2 * variance / min_effect ** 2))

    # ------------------------------------------------------------------
    # Winner determination
    # ------------------------------------------------------------------

    def determine_winner(
        self,
        control: VariantMetrics,
        treatment: VariantMetrics,
        primary_metric: str = 'ctr',
        min_sample_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Pick the better arm on a rate metric.

        Inconclusive when either arm has fewer than ``min_sample_size`` users
        (default: the analyzer's own threshold)
        or the relative lift is below the practical-significance floor.
        Otherwise the better arm wins; confidence is ``1 - p`` of a
        two-proportion z-test on the primary metric.

        Returns:
            Dict with winner ('control', 'treatment' or 'inconclusive'),
            winner_variant, confidence, relative_lift, p_value, recommendation
        """
        if primary_metric not in RATE_METRICS:
            raise ValueError(f"primary_metric must be one of {RATE_METRICS}, got {primary_metric}")
        if min_sample_size is None:
            min_sample_size = self.min_sample_size

        result = {
            'winner': 'inconclusive',
            'winner_variant': None,
            'primary_metric': primary_metric,
            'control_value': float(getattr(control, primary_metric)),
            'treatment_value': float(getattr(treatment, primary_metric)),
            'relative_lift': None,
            'p_value': None,
            'confidence': 0.0,
            'recommendation': '',
        }

        if control.sample_size < min_sample_size or treatment.sample_size < min_sample_size:
            result['recommendation'] = (
                f"Run experiment longer: need at least {min_sample_size} users per variant "
                f"(control={control.sample_size}, treatment={treatment.sample_size})"
            )
            return result

        c, t = result['control_value'], result['treatment_value']
        if c == 0:
            result['recommendation'] = f"Control {primary_metric} is zero; relative lift undefined"
            return result

        lift = (t - c) / c
        test = self.two_proportion_z_test(c, control.sample_size, t, treatment.sample_size)
        result['relative_lift'] = lift
        result['p_value'] = test['p_value']

        if abs(lift) < self.practical_significance:
            result['confidence'] = 0.5
            result['recommendation'] = (
                f"Difference of {lift:+.1%} is below the {self.practical_significance:.0%} "
                f"practical significance threshold; keep control"
            )
            return result

        winner = 'treatment' if lift > 0 else 'control'
        result['winner'] = winner
        result['winner_variant'] = treatment.variant if winner == 'treatment' else control.variant
        result['confidence'] = 1.0 - test['p_value']

        if winner == 'treatment' and test['significant']:
            result['recommendation'] = (
                f"Deploy {treatment.variant}: {primary_metric} {lift:+.1%} "
                f"(p={test['p_value']:.4f})"
            )
        elif winner == 'treatment':
            result['recommendation'] = (
                f"{treatment.variant} leads on {primary_metric} by {lift:+.1%} but is not yet "
                f"significant (p={test['p_value']:.4f}); continue monitoring"
            )
        else:
            result['recommendation'] = (
                f"Keep {control.variant}: {treatment.variant} changes {primary_metric} by {lift:+.1%}"
            )

        logger.info(
            f"Winner determination on {primary_metric}: {result['winner']} "
            f"(lift={lift:+.3f}, p={test['p_value']:.4f})"
        )
        return result
