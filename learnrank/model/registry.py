"""
Model Registry for ranking model bundles.

This module manages the versioned set of models used for serving:
- ModelBundle: CF, content-based, learning-path and LTR models of one version
- ModelRegistry: atomic swap of the active bundle with change listeners
- Artifact persistence (.npy factors/embeddings, JSON metadata, pickled rankers)
- train_bundle: one-call retraining with training-run logging

Example:
    >>> from learnrank.model.registry import ModelRegistry, train_bundle
    >>> bundle = train_bundle(interactions, embeddings, ltr_examples)
    >>> registry = ModelRegistry()
    >>> registry.swap(bundle)
    >>> save_bundle(bundle, 'artifacts/models')
"""

from typing import Dict, List, Optional, Any, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from concurrent.futures import Executor
from datetime import datetime
from pathlib import Path
import threading
import logging
import pickle
import json
import time

import numpy as np

from .als import ALSModel
from .content_based import ContentBasedModel
from .learning_path import LearningPathOptimizer
from .ltr import BaseRanker, LinearRanker, LTRExample, create_ranker
from .hybrid import HybridRankingEngine
from ..config import LearnRankConfig
from ..logging_utils import TrainingMetricsDB, format_metrics, format_params, setup_training_logger
from ..types import ContentFeatures, UserContentInteraction

logger = logging.getLogger(__name__)


def generate_version_id(prefix: str = "v") -> str:
    """Version identifier: {prefix}_{YYYYMMDD}_{HHMMSS}_{micro}."""
    return f"{prefix}_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"


# ============================================================================
# Model Bundle
# ============================================================================

@dataclass
class ModelBundle:
    """All models of one trained version. Read-only once registered."""
    version: str
    cf: Optional[ALSModel] = None
    content: Optional[ContentBasedModel] = None
    learning_path: LearningPathOptimizer = field(default_factory=LearningPathOptimizer)
    ranker: Optional[BaseRanker] = None
    created_at: datetime = field(default_factory=datetime.now)
    metrics: Dict[str, float] = field(default_factory=dict)

    def build_engine(self, executor: Optional[Executor] = None) -> HybridRankingEngine:
        signals = {'learning_path': self.learning_path}
        if self.cf is not None:
            signals['collaborative'] = self.cf
        if self.content is not None:
            signals['content_based'] = self.content
        return HybridRankingEngine(signals, ranker=self.ranker, executor=executor)

    def get_info(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'created_at': self.created_at.isoformat(),
            'cf': self.cf.get_info() if self.cf else None,
            'content': self.content.get_info() if self.content else None,
            'learning_path': self.learning_path.get_info(),
            'ranker': self.ranker.__class__.__name__ if self.ranker else None,
            'metrics': self.metrics,
        }


# ============================================================================
# Model Registry
# ============================================================================

class ModelRegistry:
    """
    Holds the active model bundle and swaps it atomically.

    Requests take a reference to the bundle once (``current()``) and use
    it for their whole lifetime, so a swap never changes models mid-request.

    Example:
        >>> registry = ModelRegistry()
        >>> registry.add_listener(lambda version: cache.clear())
        >>> registry.swap(new_bundle)
    """

    def __init__(self, bundle: Optional[ModelBundle] = None):
        self._lock = threading.Lock()
        self._bundle: Optional[ModelBundle] = bundle
        self._listeners: List[Callable[[str], None]] = []
        self.history: List[Dict[str, Any]] = []
        if bundle is not None:
            self.history.append({'version': bundle.version, 'activated_at': datetime.now().isoformat()})

    def current(self) -> Optional[ModelBundle]:
        with self._lock:
            return self._bundle

    @property
    def version(self) -> Optional[str]:
        bundle = self.current()
        return bundle.version if bundle else None

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register ``fn(new_version)`` called after every swap."""
        self._listeners.append(listener)

    def swap(self, bundle: ModelBundle) -> Optional[ModelBundle]:
        """
        Activate a new bundle.

        Returns:
            The previously active bundle (or None)
        """
        with self._lock:
            previous = self._bundle
            self._bundle = bundle
            self.history.append({'version': bundle.version, 'activated_at': datetime.now().isoformat()})

        logger.info(
            f"Model bundle swapped: {previous.version if previous else None} -> {bundle.version}"
        )
        for listener in self._listeners:
            listener(bundle.version)
        return previous


# ============================================================================
# Artifact Persistence
# ============================================================================

def save_bundle(bundle: ModelBundle, output_dir: str) -> Path:
    """
    Save a bundle under ``output_dir/<version>/``.

    Files:
        cf_user_factors.npy, cf_item_factors.npy, cf_meta.json
        cb_embeddings.npy, cb_meta.json
        ltr.json (linear) or ltr.pkl (other rankers)
        metadata.json
    """
    path = Path(output_dir) / bundle.version
    path.mkdir(parents=True, exist_ok=True)

    if bundle.cf is not None and bundle.cf.is_fitted:
        np.save(path / 'cf_user_factors.npy', bundle.cf.user_factors)
        np.save(path / 'cf_item_factors.npy', bundle.cf.item_factors)
        with open(path / 'cf_meta.json', 'w', encoding='utf-8') as f:
            json.dump({
                'user_ids': list(bundle.cf.user_index),
                'item_ids': list(bundle.cf.item_index),
                'iterations': bundle.cf.iterations,
                'regularization': bundle.cf.regularization,
                'training_history': bundle.cf.training_history,
            }, f, indent=2)

    if bundle.content is not None:
        np.save(path / 'cb_embeddings.npy', bundle.content.embeddings)
        with open(path / 'cb_meta.json', 'w', encoding='utf-8') as f:
            json.dump({'content_ids': bundle.content.content_ids}, f, indent=2)

    if isinstance(bundle.ranker, LinearRanker):
        with open(path / 'ltr.json', 'w', encoding='utf-8') as f:
            json.dump(bundle.ranker.to_dict(), f, indent=2)
    elif bundle.ranker is not None:
        with open(path / 'ltr.pkl', 'wb') as f:
            pickle.dump(bundle.ranker, f)

    lpo = bundle.learning_path
    with open(path / 'metadata.json', 'w', encoding='utf-8') as f:
        json.dump({
            'version': bundle.version,
            'created_at': bundle.created_at.isoformat(),
            'metrics': bundle.metrics,
            'learning_path': {
                'window': lpo.window,
                'remedial_threshold': lpo.remedial_threshold,
                'acceleration_threshold': lpo.acceleration_threshold,
            },
        }, f, indent=2)

    logger.info(f"Saved model bundle {bundle.version} to {path}")
    return path


def load_bundle(bundle_dir: str) -> ModelBundle:
    """Load a bundle saved by ``save_bundle``."""
    path = Path(bundle_dir)
    metadata_path = path / 'metadata.json'
    if not metadata_path.exists():
        raise FileNotFoundError(f"Bundle metadata not found: {metadata_path}")

    with open(metadata_path, 'r', encoding='utf-8') as f:
        metadata = json.load(f)

    cf = None
    if (path / 'cf_meta.json').exists():
        with open(path / 'cf_meta.json', 'r', encoding='utf-8') as f:
            cf_meta = json.load(f)
        cf = ALSModel.from_factors(
            cf_meta['user_ids'],
            cf_meta['item_ids'],
            np.load(path / 'cf_user_factors.npy'),
            np.load(path / 'cf_item_factors.npy'),
            iterations=cf_meta.get('iterations', 10),
            regularization=cf_meta.get('regularization', 0.01),
        )
        cf.training_history = cf_meta.get('training_history', [])

    content = None
    if (path / 'cb_meta.json').exists():
        with open(path / 'cb_meta.json', 'r', encoding='utf-8') as f:
            cb_meta = json.load(f)
        embeddings = np.load(path / 'cb_embeddings.npy')
        content = ContentBasedModel.build_from_embeddings(
            dict(zip(cb_meta['content_ids'], embeddings))
        )

    ranker = None
    if (path / 'ltr.json').exists():
        with open(path / 'ltr.json', 'r', encoding='utf-8') as f:
            ranker = LinearRanker.from_dict(json.load(f))
    elif (path / 'ltr.pkl').exists():
        with open(path / 'ltr.pkl', 'rb') as f:
            ranker = pickle.load(f)

    bundle = ModelBundle(
        version=metadata['version'],
        cf=cf,
        content=content,
        learning_path=LearningPathOptimizer(**metadata.get('learning_path', {})),
        ranker=ranker,
        created_at=datetime.fromisoformat(metadata['created_at']),
        metrics=metadata.get('metrics', {}),
    )
    logger.info(f"Loaded model bundle {bundle.version} from {path}")
    return bundle


def load_latest_bundle(artifacts_dir: str) -> Optional[ModelBundle]:
    """Most recently created bundle under ``artifacts_dir``, or None."""
    root = Path(artifacts_dir)
    if not root.is_dir():
        return None

    latest = None
    for metadata_path in root.glob('*/metadata.json'):
        with open(metadata_path, 'r', encoding='utf-8') as f:
            created_at = json.load(f).get('created_at', '')
        if latest is None or created_at > latest[0]:
            latest = (created_at, metadata_path.parent)

    if latest is None:
        logger.warning(f"No model bundles found in {root}")
        return None
    return load_bundle(str(latest[1]))


# ============================================================================
# Training
# ============================================================================

def train_bundle(
    interactions: Iterable[UserContentInteraction],
    embeddings: Mapping[str, Sequence[float]],
    ltr_examples: Optional[Sequence[LTRExample]] = None,
    config: Optional[LearnRankConfig] = None,
    content_features: Optional[Mapping[str, ContentFeatures]] = None,
    version: Optional[str] = None,
    metrics_db: Optional[TrainingMetricsDB] = None,
    log_to_file: bool = False,
    save: bool = False
) -> ModelBundle:
    """
    Train every model of a new version.

    Args:
        interactions: Implicit feedback log for ALS
        embeddings: Content id -> embedding for the content-based model
        ltr_examples: Optional labelled examples; no ranker when omitted
        config: Hyperparameters (defaults when None)
        content_features: Prerequisite/difficulty table for the path optimizer
        version: Version id (generated when None)
        metrics_db: Optional training-run log
        log_to_file: Also write the run log to ``<config.log_dir>/training/bundle.log``
        save: Save the trained bundle under ``config.artifacts_dir``

    Raises:
        InsufficientDataError: If interactions or embeddings are empty
    """
    config = config or LearnRankConfig()
    version = version or generate_version_id()
    run_id = f"bundle_{version}"
    run_logger = (
        setup_training_logger('bundle', run_id, log_dir=config.log_dir, console=False)
        if log_to_file else logger
    )
    params = {
        'factors': config.als.factors,
        'iterations': config.als.iterations,
        'regularization': config.als.regularization,
        'ltr_model': config.ltr.model_type,
        'ltr_iterations': config.ltr.iterations,
        'ltr_learning_rate': config.ltr.learning_rate,
    }
    try:
        bundle = _train(
            run_id, version, params, interactions, embeddings, ltr_examples,
            config, content_features, metrics_db, run_logger,
        )
    finally:
        if run_logger is not logger:
            for handler in list(run_logger.handlers):
                handler.close()
                run_logger.removeHandler(handler)

    if save:
        save_bundle(bundle, config.artifacts_dir)
    return bundle


def _train(
    run_id: str,
    version: str,
    params: Dict[str, Any],
    interactions: Iterable[UserContentInteraction],
    embeddings: Mapping[str, Sequence[float]],
    ltr_examples: Optional[Sequence[LTRExample]],
    config: LearnRankConfig,
    content_features: Optional[Mapping[str, ContentFeatures]],
    metrics_db: Optional[TrainingMetricsDB],
    run_logger: logging.Logger
) -> ModelBundle:
    run_logger.info(f"Training bundle {version} | {format_params(params)}")
    if metrics_db is not None:
        metrics_db.log_training_start(run_id, 'bundle', params, version=version)

    start = time.time()
    try:
        cf = ALSModel(
            factors=config.als.factors,
            iterations=config.als.iterations,
            regularization=config.als.regularization,
            init_scale=config.als.init_scale,
            random_state=config.als.random_state,
        )

        def callback(iteration, loss, seconds):
            run_logger.debug(f"ALS iteration {iteration} | loss={loss:.6f}, time={seconds:.3f}s")
            if metrics_db is not None:
                metrics_db.log_iteration(run_id, iteration, loss=loss, wall_time_seconds=seconds)
        cf_summary = cf.fit(interactions, iteration_callback=callback)

        content = ContentBasedModel.build_from_embeddings(embeddings)
        learning_path = LearningPathOptimizer(
            content_features,
            window=config.learning_path.window,
            remedial_threshold=config.learning_path.remedial_threshold,
            acceleration_threshold=config.learning_path.acceleration_threshold,
        )

        ranker = None
        if ltr_examples:
            ranker = create_ranker(
                config.ltr.model_type,
                iterations=config.ltr.iterations,
                learning_rate=config.ltr.learning_rate,
                n_estimators=config.ltr.n_estimators,
                max_depth=config.ltr.max_depth,
            ).train(ltr_examples)
    except Exception as e:
        run_logger.error(f"Bundle training failed: {e}")
        if metrics_db is not None:
            metrics_db.log_training_failed(run_id, str(e))
        raise

    elapsed = time.time() - start
    metrics = {'cf_final_loss': float(cf_summary['final_loss'])}
    if isinstance(ranker, LinearRanker) and ranker.loss_history:
        metrics['ltr_final_mse'] = ranker.loss_history[-1]
    if metrics_db is not None:
        metrics_db.log_training_complete(run_id, metrics, training_time_seconds=elapsed)

    run_logger.info(f"Bundle {version} trained in {elapsed:.2f}s | {format_metrics(metrics)}")
    return ModelBundle(
        version=version,
        cf=cf,
        content=content,
        learning_path=learning_path,
        ranker=ranker,
        metrics=metrics,
    )
