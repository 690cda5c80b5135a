"""
Service assembly from configuration.

Builds a RecommendationService and its collaborators from one
LearnRankConfig: statistics thresholds, weight table, cache and timeout
settings, the request log and service log under ``log_dir``, and the newest
model bundle under ``artifacts_dir``.

Example:
    >>> from learnrank.config import load_config
    >>> service = build_service(load_config(), feature_store)
"""

from typing import Optional
from concurrent.futures import Executor
from pathlib import Path
import logging

from learnrank.config import LearnRankConfig
from learnrank.experiments import (
    ExperimentManager,
    ExperimentMetricsCollector,
    StatisticalAnalyzer,
    VariantWeightsResolver,
)
from learnrank.feature_store import FeatureStore
from learnrank.logging_utils import SERVICE_DB_NAME, ServiceMetricsDB, setup_service_logger
from learnrank.model import ModelRegistry, load_latest_bundle

from .recommender import RecommendationService

logger = logging.getLogger(__name__)


def build_service(
    config: LearnRankConfig,
    feature_store: FeatureStore,
    registry: Optional[ModelRegistry] = None,
    experiment_manager: Optional[ExperimentManager] = None,
    executor: Optional[Executor] = None,
    console_log: bool = True
) -> RecommendationService:
    """
    Construct the service for one process.

    Args:
        config: Loaded configuration
        feature_store: Async feature store client
        registry: Model registry (default: newest bundle in ``config.artifacts_dir``)
        experiment_manager: Experiments to serve (default: none)
        executor: Scoring executor (default: service-owned thread pool)
        console_log: Also log the service to the console
    """
    setup_service_logger('recommender', log_dir=config.log_dir, console=console_log)

    if registry is None:
        registry = ModelRegistry(load_latest_bundle(config.artifacts_dir))

    analyzer = StatisticalAnalyzer.from_config(config.statistics)
    service = RecommendationService(
        feature_store,
        registry,
        experiment_manager=experiment_manager,
        weights_resolver=VariantWeightsResolver(config.ranking),
        config=config.inference,
        metrics_collector=ExperimentMetricsCollector(analyzer=analyzer),
        service_metrics_db=ServiceMetricsDB(str(Path(config.log_dir) / SERVICE_DB_NAME)),
        executor=executor,
    )
    logger.info(
        f"Recommendation service ready | model={registry.version}, "
        f"timeout={config.inference.request_timeout_seconds * 1000:.0f} ms, log_dir={config.log_dir}"
    )
    return service
