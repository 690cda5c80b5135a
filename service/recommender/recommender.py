"""
Recommendation Service (online inference).

This module provides RecommendationService, the request pipeline around
the hybrid ranking engine:

    validate -> resolve experiment and weights -> response cache
    -> batched feature fetch -> ensure learning path -> score in executor
    -> top-K -> explanations -> impressions -> response

The pipeline runs under a latency budget (default 150 ms). Feature store
failures and timeouts fail the whole request with a retryable error;
partial scores are never returned.

Example:
    >>> service = RecommendationService(store, registry, experiment_manager=manager)
    >>> response = await service.get_recommendations(
    ...     RecommendationRequest(user_id='u1', candidate_ids=['c1', 'c2'], k=10))
    >>> [item.content_id for item in response.recommendations]
"""

from typing import Dict, List, Optional, Any, Sequence, Tuple, Union, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from functools import partial
from datetime import datetime
import asyncio
import threading
import logging
import time

from learnrank.config import InferenceConfig
from learnrank.errors import (
    LearnRankError,
    FeatureStoreError,
    RequestTimeoutError,
    ValidationError,
)
from learnrank.experiments import (
    ExperimentConfig,
    ExperimentManager,
    ExperimentMetricsCollector,
    VariantWeightsResolver,
    build_experiment_report,
)
from learnrank.explain import ExplanationGenerator
from learnrank.feature_store import FeatureStore
from learnrank.logging_utils import ServiceMetricsDB
from learnrank.model import (
    HybridRankingEngine,
    LearningPathOptimizer,
    ModelBundle,
    ModelRegistry,
    UserContext,
    validate_k,
)
from learnrank.model.base import ordered_unique
from learnrank.types import (
    CompletionStatus,
    ExperimentAssignment,
    LearningPath,
    RecommendationRequest,
    RecommendationResponse,
    RecommendedItem,
    CONTROL_VARIANT,
)

from .cache import ResponseCache

logger = logging.getLogger(__name__)


@dataclass
class ServingModels:
    """Per-version objects derived from a model bundle."""
    version: Optional[str]
    engine: HybridRankingEngine
    explainer: ExplanationGenerator
    path_optimizer: LearningPathOptimizer


class RecommendationService:
    """
    Online ranking for one process.

    All collaborators are passed in; nothing is looked up globally.

    Args:
        feature_store: Async feature store client
        registry: Holds the active model bundle
        experiment_manager: Variant assignment (default: no experiments)
        weights_resolver: Variant -> ranking weights (default: built-in table)
        config: Inference settings (timeout, cache, K limit, workers)
        response_cache: Response cache (default: built from config)
        metrics_collector: Experiment event log for impressions/events
        service_metrics_db: Optional SQLite request log
        executor: Executor for CPU-bound scoring (default: own thread pool)
        explanation_generator: Overrides the per-bundle generator
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        registry: ModelRegistry,
        experiment_manager: Optional[ExperimentManager] = None,
        weights_resolver: Optional[VariantWeightsResolver] = None,
        config: Optional[InferenceConfig] = None,
        response_cache: Optional[ResponseCache] = None,
        metrics_collector: Optional[ExperimentMetricsCollector] = None,
        service_metrics_db: Optional[ServiceMetricsDB] = None,
        executor: Optional[Executor] = None,
        explanation_generator: Optional[ExplanationGenerator] = None
    ):
        self.feature_store = feature_store
        self.registry = registry
        self.experiment_manager = experiment_manager or ExperimentManager()
        self.weights_resolver = weights_resolver or VariantWeightsResolver()
        self.config = config or InferenceConfig()
        self.response_cache = response_cache or ResponseCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_size=self.config.cache_max_size,
        )
        self.metrics_collector = metrics_collector or ExperimentMetricsCollector()
        self.service_metrics_db = service_metrics_db
        self.explanation_generator = explanation_generator

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.config.scoring_workers,
            thread_name_prefix="learnrank-scoring",
        )

        self._models: Optional[ServingModels] = None
        self._models_lock = threading.Lock()
        self.registry.add_listener(self._on_model_update)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def _on_model_update(self, version: str) -> None:
        self.response_cache.on_model_update(version)
        with self._models_lock:
            self._models = None

    def _serving_models(self, bundle: Optional[ModelBundle]) -> ServingModels:
        version = bundle.version if bundle else None
        with self._models_lock:
            if self._models is not None and self._models.version == version:
                return self._models

        if bundle is None:
            logger.warning("No model bundle registered, scoring with learning path and quality only")
            optimizer = LearningPathOptimizer()
            models = ServingModels(
                version=None,
                engine=HybridRankingEngine({'learning_path': optimizer}),
                explainer=self.explanation_generator or ExplanationGenerator(),
                path_optimizer=optimizer,
            )
        else:
            models = ServingModels(
                version=bundle.version,
                engine=bundle.build_engine(),
                explainer=self.explanation_generator or ExplanationGenerator(bundle.content, bundle.ranker),
                path_optimizer=bundle.learning_path,
            )

        with self._models_lock:
            self._models = models
        return models

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_request(self, request: RecommendationRequest) -> None:
        """Reject malformed requests before any store or model call."""
        if not isinstance(request.user_id, str) or not request.user_id.strip():
            raise ValidationError("user_id must be a non-empty string")
        validate_k(request.k)
        if request.k > self.config.max_k:
            raise ValidationError(
                f"k must be at most {self.config.max_k}, got {request.k}",
                details={'k': request.k, 'max_k': self.config.max_k},
            )
        if isinstance(request.candidate_ids, str) or not all(
            isinstance(c, str) and c for c in request.candidate_ids
        ):
            raise ValidationError("candidate_ids must be a list of non-empty strings")

    # ------------------------------------------------------------------
    # Feature store access
    # ------------------------------------------------------------------

    async def _fetch(self, operation: str, awaitable):
        try:
            return await awaitable
        except LearnRankError:
            raise
        except Exception as e:
            logger.error(f"Feature store {operation} failed: {e}")
            raise FeatureStoreError(
                f"Feature store {operation} failed: {e}",
                details={'operation': operation},
            ) from e

    async def _load_user_context(
        self,
        user_id: str,
        candidate_ids: Sequence[str]
    ) -> UserContext:
        features, embedding, interactions, content_features = await asyncio.gather(
            self._fetch('get_user_features', self.feature_store.get_user_features(user_id)),
            self._fetch('get_user_embedding', self.feature_store.get_user_embedding(user_id)),
            self._fetch(
                'get_user_interactions',
                self.feature_store.get_user_interactions(user_id, self.config.interaction_history_limit),
            ),
            self._fetch(
                'batch_get_content_features',
                self.feature_store.batch_get_content_features(candidate_ids),
            ),
        )

        completed = frozenset(
            i.content_id for i in interactions if i.completion_status == CompletionStatus.COMPLETED
        )
        # oldest first so the latest score wins
        performance: Dict[str, float] = {}
        for interaction in reversed(interactions):
            if interaction.performance_score is not None:
                performance.pop(interaction.content_id, None)
                performance[interaction.content_id] = float(interaction.performance_score)

        return UserContext(
            user_id=user_id,
            embedding=embedding,
            features=features,
            completed_ids=completed,
            performance=performance,
            content_features=dict(content_features),
        )

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def _resolve_experiment(self, experiment_id: Optional[str]) -> Optional[ExperimentConfig]:
        if experiment_id is None:
            active = sorted(self.experiment_manager.get_active_experiments(), key=lambda e: e.experiment_id)
            return active[0] if active else None

        experiment = self.experiment_manager.get_experiment(experiment_id)
        if experiment is None or not experiment.is_running():
            logger.debug(f"Experiment {experiment_id} unknown or inactive, serving control")
            return None
        return experiment

    async def _resolve_assignment(
        self,
        user_id: str,
        experiment: ExperimentConfig
    ) -> ExperimentAssignment:
        assignment = self.experiment_manager.get_assignment(user_id, experiment.experiment_id)
        if assignment is not None:
            return assignment

        stored = await self._fetch(
            'get_experiment_assignment',
            self.feature_store.get_experiment_assignment(user_id, experiment.experiment_id),
        )
        if stored is not None:
            self.experiment_manager.restore_assignment(stored)
            return stored

        assignment = self.experiment_manager.get_or_create_assignment(user_id, experiment.experiment_id)
        await self._fetch('put_experiment_assignment', self.feature_store.put_experiment_assignment(assignment))
        return assignment

    # ------------------------------------------------------------------
    # Learning paths
    # ------------------------------------------------------------------

    async def _ensure_learning_path(
        self,
        optimizer: LearningPathOptimizer,
        user: UserContext,
        candidate_ids: Sequence[str]
    ) -> Optional[LearningPath]:
        path = await self._fetch('get_user_learning_path', self.feature_store.get_user_learning_path(user.user_id))
        if path is not None:
            return path

        path = optimizer.create_path(
            user.user_id,
            candidate_ids,
            completed_ids=user.completed_ids,
            performance=user.performance,
            content_features=user.content_features,
        )
        if path is not None:
            await self._fetch('put_learning_path', self.feature_store.put_learning_path(path))
        return path

    async def update_learning_path(
        self,
        user_id: str,
        latest_performance: Union[Mapping[str, float], Sequence[float]]
    ) -> Optional[LearningPath]:
        """Re-sequence the user's active path after new performance signals."""
        path = await self._fetch('get_user_learning_path', self.feature_store.get_user_learning_path(user_id))
        if path is None:
            return None
        optimizer = self._serving_models(self.registry.current()).path_optimizer
        updated = optimizer.update_path_adaptively(path, latest_performance)
        await self._fetch('put_learning_path', self.feature_store.put_learning_path(updated))
        return updated

    # ------------------------------------------------------------------
    # Recommendation pipeline
    # ------------------------------------------------------------------

    async def get_recommendations(self, request: RecommendationRequest) -> RecommendationResponse:
        """
        Rank the request's candidates for its user.

        Raises:
            ValidationError: Bad user id, K or candidates
            FeatureStoreError: Feature store failure (retryable)
            RequestTimeoutError: Latency budget exceeded (retryable)
        """
        start = time.perf_counter()
        timeout = self.config.request_timeout_seconds
        try:
            self.validate_request(request)
            response = await asyncio.wait_for(self._recommend(request, start), timeout=timeout)
        except asyncio.TimeoutError:
            error = RequestTimeoutError(
                f"Recommendation for {request.user_id} exceeded {timeout * 1000:.0f} ms",
                timeout_seconds=timeout,
                details={'user_id': request.user_id},
            )
            logger.warning(error.message)
            await self._log_request(request, start, error=error)
            raise error from None
        except LearnRankError as e:
            logger.warning(f"Recommendation failed for {request.user_id}: [{e.error_class}] {e.message}")
            await self._log_request(request, start, error=e)
            raise

        await self._log_request(request, start, response=response)
        return response

    async def _recommend(self, request: RecommendationRequest, start: float) -> RecommendationResponse:
        bundle = self.registry.current()
        models = self._serving_models(bundle)

        experiment = self._resolve_experiment(request.experiment_id)
        assignment = await self._resolve_assignment(request.user_id, experiment) if experiment else None
        variant = assignment.variant if assignment else CONTROL_VARIANT
        weights = self.weights_resolver.weights_for(variant, experiment)

        cached = self.response_cache.get(request, variant, models.version)
        if cached is not None:
            response = replace(
                cached.response,
                context=request.context,
                from_cache=True,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
            self._record_impressions(response, cached.categories)
            return response

        candidates = ordered_unique(request.candidate_ids)
        user = await self._load_user_context(request.user_id, candidates)
        if self.config.exclude_completed:
            candidates = [c for c in candidates if c not in user.completed_ids]

        path = await self._ensure_learning_path(models.path_optimizer, user, candidates)

        loop = asyncio.get_running_loop()
        ranked = await loop.run_in_executor(
            self.executor, models.engine.rank_candidates, user, candidates, weights, request.k
        )

        items = []
        for rank, scores in enumerate(ranked, start=1):
            explanation = None
            if request.include_explanations:
                explanation = models.explainer.generate(user, scores, weights, path=path)
            items.append(RecommendedItem(
                content_id=scores.content_id,
                rank=rank,
                final_score=scores.final_score,
                scores=scores,
                variant=variant,
                explanation=explanation,
            ))

        response = RecommendationResponse(
            user_id=request.user_id,
            recommendations=items,
            context=request.context,
            learning_path=path,
            experiment_id=experiment.experiment_id if experiment else None,
            variant=variant,
            model_version=models.version,
            is_cold_start=user.is_cold_start,
            generated_at=datetime.now(),
            latency_ms=(time.perf_counter() - start) * 1000,
        )

        categories = {
            c: f.category for c, f in user.content_features.items() if f.category is not None
        }
        self.response_cache.put(request, variant, models.version, response, categories)
        self._record_impressions(response, categories)

        logger.debug(
            f"Ranked {len(candidates)} candidates for {request.user_id} "
            f"(variant={variant}, cold_start={user.is_cold_start}) in {response.latency_ms:.1f} ms"
        )
        return response

    async def get_recommendations_batch(
        self,
        requests: Sequence[RecommendationRequest]
    ) -> List[Union[RecommendationResponse, LearnRankError]]:
        """
        Serve several requests concurrently, bounded by ``max_batch_concurrency``.

        Failed requests yield their error in place of a response.
        """
        semaphore = asyncio.Semaphore(self.config.max_batch_concurrency)

        async def run(request: RecommendationRequest):
            async with semaphore:
                try:
                    return await self.get_recommendations(request)
                except LearnRankError as e:
                    return e

        return list(await asyncio.gather(*(run(r) for r in requests)))

    # ------------------------------------------------------------------
    # Events and metrics
    # ------------------------------------------------------------------

    def _record_impressions(self, response: RecommendationResponse, categories: Dict[str, str]) -> None:
        if response.experiment_id is None:
            return
        for item in response.recommendations:
            self.metrics_collector.record_event(
                response.experiment_id,
                response.user_id,
                response.variant,
                'impression',
                {'content_id': item.content_id, 'category': categories.get(item.content_id)},
            )

    def record_event(
        self,
        experiment_id: str,
        user_id: str,
        variant: str,
        event_type: str,
        properties: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        self.metrics_collector.record_event(experiment_id, user_id, variant, event_type, properties, timestamp)

    def get_experiment_metrics(self, experiment_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Per-variant metrics, confidence intervals, winner and recommendation."""
        return build_experiment_report(
            self.experiment_manager,
            self.metrics_collector,
            self.metrics_collector.analyzer,
            experiment_id,
            now,
        )

    async def _log_request(
        self,
        request: RecommendationRequest,
        start: float,
        response: Optional[RecommendationResponse] = None,
        error: Optional[LearnRankError] = None
    ) -> None:
        """Write the request log row on the executor, off the event loop."""
        if self.service_metrics_db is None:
            return
        latency_ms = response.latency_ms if response else (time.perf_counter() - start) * 1000
        write = partial(
            self.service_metrics_db.log_request,
            user_id=str(request.user_id),
            k=request.k if isinstance(request.k, int) else 0,
            latency_ms=latency_ms,
            num_recommendations=response.count if response else 0,
            num_candidates=len(request.candidate_ids),
            cold_start=response.is_cold_start if response else False,
            cache_hit=response.from_cache if response else False,
            experiment_id=response.experiment_id if response else request.experiment_id,
            variant=response.variant if response else None,
            model_version=response.model_version if response else self.registry.version,
            error_class=error.error_class if error else None,
            error=error.message if error else None,
        )
        await asyncio.get_running_loop().run_in_executor(self.executor, write)

    def get_health(self) -> Dict[str, Any]:
        health = {
            'model_version': self.registry.version,
            'response_cache': self.response_cache.stats(),
            'experiments': self.experiment_manager.get_stats(),
        }
        if self.service_metrics_db is not None:
            health['requests'] = self.service_metrics_db.get_health_summary()
        return health

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False)
