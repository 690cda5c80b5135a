"""
Experiment Manager for ranking A/B tests.

Assigns users to variants deterministically: the MD5 hash of
``user_id + experiment_id`` modulo the number of variants selects the
variant, so the same user always lands in the same arm without an
assignment table. Unknown or inactive experiments resolve to control.

Example:
    >>> manager = ExperimentManager()
    >>> manager.create_experiment(ExperimentConfig('exp1', 'Content weight', ['control', 'variant_a']))
    >>> manager.start_experiment('exp1')
    >>> manager.assign_user_to_variant('u42', 'exp1')
    'variant_a'
"""

from typing import Dict, List, Optional, Any, Iterable, Tuple
from dataclasses import dataclass, field, asdict
from datetime import datetime
import hashlib
import threading
import logging

from ..config import RankingConfig
from ..errors import ConfigurationError
from ..types import (
    ExperimentAssignment,
    ExperimentStatus,
    RankingWeights,
    CONTROL_VARIANT,
    to_jsonable,
)

logger = logging.getLogger(__name__)

RATE_METRICS = ('ctr', 'completion_rate', 'retention_7_day')


def assignment_hash(user_id: str, experiment_id: str) -> int:
    """Deterministic non-negative hash of ``user_id + experiment_id``."""
    digest = hashlib.md5(f"{user_id}{experiment_id}".encode('utf-8')).hexdigest()
    return int(digest[:8], 16)


@dataclass
class ExperimentConfig:
    """Definition of one ranking experiment."""
    experiment_id: str
    name: str
    variants: List[str]
    description: str = ''
    status: ExperimentStatus = ExperimentStatus.PLANNING
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    primary_metric: str = 'ctr'
    min_sample_size: Optional[int] = None   # None: the analyzer's threshold
    confidence_level: float = 0.95
    variant_weights: Dict[str, RankingWeights] = field(default_factory=dict)

    def __post_init__(self):
        if not self.variants:
            raise ConfigurationError(f"Experiment {self.experiment_id} has no variants")
        if len(set(self.variants)) != len(self.variants):
            raise ConfigurationError(f"Experiment {self.experiment_id} has duplicate variants")
        unknown = set(self.variant_weights) - set(self.variants)
        if unknown:
            raise ConfigurationError(
                f"Weights given for variants not in experiment {self.experiment_id}: {sorted(unknown)}"
            )
        if self.primary_metric not in RATE_METRICS:
            raise ConfigurationError(
                f"primary_metric must be one of {RATE_METRICS}, got {self.primary_metric}"
            )

    def is_running(self, now: Optional[datetime] = None) -> bool:
        if self.status != ExperimentStatus.RUNNING:
            return False
        now = now or datetime.now()
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = to_jsonable(asdict(self))
        data['variant_weights'] = {v: w.as_dict() for v, w in self.variant_weights.items()}
        return data


class ExperimentManager:
    """
    Registry of experiments and per-instance assignment cache.

    Construct once per process and pass to the inference service.
    """

    def __init__(self, experiments: Optional[Iterable[ExperimentConfig]] = None):
        self._experiments: Dict[str, ExperimentConfig] = {}
        self._assignments: Dict[Tuple[str, str], ExperimentAssignment] = {}
        self._lock = threading.Lock()
        for experiment in experiments or []:
            self.create_experiment(experiment)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_experiment(self, config: ExperimentConfig) -> ExperimentConfig:
        if config.experiment_id in self._experiments:
            raise ConfigurationError(f"Experiment already exists: {config.experiment_id}")
        self._experiments[config.experiment_id] = config
        logger.info(
            f"Created experiment {config.experiment_id} ({config.name}) "
            f"with variants {config.variants}"
        )
        return config

    def start_experiment(self, experiment_id: str) -> ExperimentConfig:
        config = self._require(experiment_id)
        config.status = ExperimentStatus.RUNNING
        config.start_date = config.start_date or datetime.now()
        logger.info(f"Started experiment {experiment_id}")
        return config

    def end_experiment(self, experiment_id: str) -> ExperimentConfig:
        config = self._require(experiment_id)
        config.status = ExperimentStatus.COMPLETED
        config.end_date = datetime.now()
        logger.info(f"Ended experiment {experiment_id}")
        return config

    def get_experiment(self, experiment_id: str) -> Optional[ExperimentConfig]:
        return self._experiments.get(experiment_id)

    def get_active_experiments(self, now: Optional[datetime] = None) -> List[ExperimentConfig]:
        return [e for e in self._experiments.values() if e.is_running(now)]

    def _require(self, experiment_id: str) -> ExperimentConfig:
        config = self._experiments.get(experiment_id)
        if config is None:
            raise KeyError(f"Unknown experiment: {experiment_id}")
        return config

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_user_to_variant(self, user_id: str, experiment_id: str) -> str:
        """Variant for the user; control for unknown or inactive experiments."""
        return self.get_or_create_assignment(user_id, experiment_id).variant

    def get_or_create_assignment(self, user_id: str, experiment_id: str) -> ExperimentAssignment:
        key = (user_id, experiment_id)
        with self._lock:
            cached = self._assignments.get(key)
        if cached is not None:
            return cached

        experiment = self._experiments.get(experiment_id)
        if experiment is None or not experiment.is_running():
            # not cached so that a later start of the experiment takes effect
            return ExperimentAssignment(
                user_id=user_id,
                experiment_id=experiment_id,
                variant=CONTROL_VARIANT,
            )

        h = assignment_hash(user_id, experiment_id)
        n = len(experiment.variants)
        assignment = ExperimentAssignment(
            user_id=user_id,
            experiment_id=experiment_id,
            variant=experiment.variants[h % n],
            cohort_id=f"cohort_{h // n}",
        )
        with self._lock:
            assignment = self._assignments.setdefault(key, assignment)
        return assignment

    def get_assignment(self, user_id: str, experiment_id: str) -> Optional[ExperimentAssignment]:
        """Previously made assignment, or None."""
        with self._lock:
            return self._assignments.get((user_id, experiment_id))

    def restore_assignment(self, assignment: ExperimentAssignment) -> None:
        """Seed the cache from a persisted assignment (feature store)."""
        with self._lock:
            self._assignments.setdefault((assignment.user_id, assignment.experiment_id), assignment)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            assignments = list(self._assignments.values())
        by_experiment: Dict[str, Dict[str, int]] = {}
        for a in assignments:
            counts = by_experiment.setdefault(a.experiment_id, {})
            counts[a.variant] = counts.get(a.variant, 0) + 1
        return {
            'experiments': len(self._experiments),
            'active': len(self.get_active_experiments()),
            'assignments': by_experiment,
        }


class VariantWeightsResolver:
    """Experiment override first, then the configured table, then control."""

    def __init__(self, ranking_config: Optional[RankingConfig] = None):
        self.ranking_config = ranking_config or RankingConfig()

    def weights_for(
        self,
        variant: str,
        experiment: Optional[ExperimentConfig] = None
    ) -> RankingWeights:
        if experiment is not None and variant in experiment.variant_weights:
            return experiment.variant_weights[variant]
        return self.ranking_config.weights_for(variant)
