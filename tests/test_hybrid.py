"""Tests for the hybrid ranking engine and the model registry."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime

import numpy as np
import pytest

from learnrank.config import ALSConfig, LearnRankConfig
from learnrank.errors import InsufficientDataError, ValidationError
from learnrank.logging_utils import TrainingMetricsDB
from learnrank.model import (
    ContentBasedModel,
    HybridRankingEngine,
    LearningPathOptimizer,
    LinearRanker,
    LTRExample,
    ModelBundle,
    ModelRegistry,
    ScoringModel,
    UserContext,
    load_bundle,
    load_latest_bundle,
    save_bundle,
    train_bundle,
    validate_k,
)
from learnrank.types import RankingWeights

CONTROL = RankingWeights(0.35, 0.35, 0.20, 0.10)


class FixedScores(ScoringModel):
    """Scores from a fixed table, None for anything else."""

    name = 'fixed'

    def __init__(self, table):
        self.table = table

    def predict(self, user, content_id):
        return self.table.get(content_id)


def _cold_user(quality_catalog):
    return UserContext(user_id='new_user', content_features=quality_catalog)


class TestHybridRanking:
    def test_cold_start_orders_by_quality(self, quality_catalog):
        engine = HybridRankingEngine({'learning_path': LearningPathOptimizer()})
        ranked = engine.rank_candidates(_cold_user(quality_catalog), ['c1', 'c2', 'c3', 'c4', 'c5'], CONTROL, k=5)

        assert [s.content_id for s in ranked] == ['c1', 'c5', 'c3', 'c2', 'c4']
        top = ranked[0]
        assert top.collaborative == top.content_based == top.learning_path == 0.5
        assert top.hybrid_score == pytest.approx(0.45 + 0.1 * 0.9)

    def test_weighted_sum(self):
        engine = HybridRankingEngine({
            'collaborative': FixedScores({'a': 1.0}),
            'content_based': FixedScores({'a': 0.0}),
            'learning_path': FixedScores({'a': 0.5}),
        })
        user = UserContext(user_id='u')
        scores = engine.score_content(user, ['a'], CONTROL)['a']
        assert scores.hybrid_score == pytest.approx(0.35 * 1.0 + 0.35 * 0.0 + 0.2 * 0.5 + 0.1 * 0.5)
        assert scores.final_score == scores.hybrid_score
        assert scores.ltr_score is None

    def test_scores_stay_in_unit_interval(self):
        engine = HybridRankingEngine({'collaborative': FixedScores({'a': 3.0, 'b': -2.0})})
        scores = engine.score_content(UserContext(user_id='u'), ['a', 'b'], CONTROL)
        for s in scores.values():
            assert 0.0 <= s.collaborative <= 1.0
            assert 0.0 <= s.hybrid_score <= 1.0

    def test_ties_break_by_content_id(self):
        engine = HybridRankingEngine({})
        ranked = engine.rank_candidates(UserContext(user_id='u'), ['z', 'b', 'm'], CONTROL, k=3)
        assert [s.content_id for s in ranked] == ['b', 'm', 'z']

    def test_reproducible_with_executor(self, trained_bundle, catalog):
        user = UserContext(
            user_id='u1',
            embedding=np.asarray(catalog['loops'].embedding),
            completed_ids=frozenset({'intro'}),
            content_features=catalog,
        )
        ids = sorted(catalog)
        serial = trained_bundle.build_engine().score_content(user, ids, CONTROL)
        with ThreadPoolExecutor(max_workers=3) as pool:
            parallel = trained_bundle.build_engine(pool).score_content(user, ids, CONTROL)
        for cid in ids:
            assert serial[cid].final_score == parallel[cid].final_score

    def test_ltr_blend(self):
        examples = [
            LTRExample({'quality_prior': q}, label=q) for q in np.linspace(0.0, 1.0, 20)
        ]
        ranker = LinearRanker(iterations=500, learning_rate=0.5).train(examples)
        engine = HybridRankingEngine({}, ranker=ranker)
        weights = RankingWeights(0.3, 0.3, 0.3, 0.1, ltr_blend_alpha=0.3)

        scores = engine.score_content(UserContext(user_id='u'), ['a'], weights)['a']
        assert scores.ltr_score is not None
        assert scores.final_score == pytest.approx(0.7 * scores.hybrid_score + 0.3 * scores.ltr_score)

        unblended = engine.score_content(UserContext(user_id='u'), ['a'], CONTROL)['a']
        assert unblended.ltr_score is None

    def test_top_k_truncates(self, quality_catalog):
        engine = HybridRankingEngine({})
        ranked = engine.rank_candidates(_cold_user(quality_catalog), list(quality_catalog), CONTROL, k=2)
        assert len(ranked) == 2

    def test_empty_candidates(self):
        assert HybridRankingEngine({}).score_content(UserContext(user_id='u'), [], CONTROL) == {}

    @pytest.mark.parametrize("k", [0, -1, 2.5, True, None])
    def test_invalid_k(self, k):
        with pytest.raises(ValidationError):
            validate_k(k)

    def test_unknown_signal(self):
        with pytest.raises(ValueError):
            HybridRankingEngine({'popularity': FixedScores({})})

    def test_swapping_a_signal_implementation(self):
        cb = ContentBasedModel.build_from_embeddings({'a': [1.0, 0.0], 'b': [0.0, 1.0]})
        user = UserContext(user_id='u', embedding=np.array([1.0, 0.0]))
        weights = RankingWeights(0.0, 1.0, 0.0, 0.0)

        real = HybridRankingEngine({'content_based': cb}).rank_candidates(user, ['a', 'b'], weights, k=2)
        fake = HybridRankingEngine({'content_based': FixedScores({'b': 0.9})}).rank_candidates(
            user, ['a', 'b'], weights, k=2
        )
        assert [s.content_id for s in real] == ['a', 'b']
        assert [s.content_id for s in fake] == ['b', 'a']


class TestModelRegistry:
    def test_swap_notifies_listeners(self):
        registry = ModelRegistry()
        seen = []
        registry.add_listener(seen.append)

        assert registry.current() is None
        assert registry.swap(ModelBundle(version='v1')) is None
        previous = registry.swap(ModelBundle(version='v2'))

        assert previous.version == 'v1'
        assert registry.version == 'v2'
        assert seen == ['v1', 'v2']
        assert [h['version'] for h in registry.history] == ['v1', 'v2']

    def test_save_and_load(self, trained_bundle, tmp_path, catalog):
        examples = [LTRExample({'quality_prior': q}, q) for q in (0.1, 0.5, 0.9)]
        trained_bundle.ranker = LinearRanker(iterations=10).train(examples)

        path = save_bundle(trained_bundle, str(tmp_path))
        assert path.name == 'v_test'
        loaded = load_bundle(str(path))

        assert loaded.version == 'v_test'
        np.testing.assert_allclose(loaded.cf.item_factors, trained_bundle.cf.item_factors)
        assert loaded.cf.predict_score('u1', 'loops') == trained_bundle.cf.predict_score('u1', 'loops')
        assert loaded.content.content_ids == trained_bundle.content.content_ids
        assert loaded.ranker.predict({'quality_prior': 0.7}) == trained_bundle.ranker.predict({'quality_prior': 0.7})

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_bundle(str(tmp_path / 'nope'))

    def test_train_without_interactions(self, catalog):
        embeddings = {cid: f.embedding for cid, f in catalog.items()}
        with pytest.raises(InsufficientDataError):
            train_bundle([], embeddings)

    def test_train_without_embeddings(self, interactions, small_config):
        with pytest.raises(InsufficientDataError):
            train_bundle(interactions, {}, config=small_config)

    def test_training_run_logged(self, catalog, interactions, small_config, tmp_path):
        db = TrainingMetricsDB(str(tmp_path / 'training.db'))
        embeddings = {cid: f.embedding for cid, f in catalog.items()}
        bundle = train_bundle(interactions, embeddings, config=small_config, version='v_logged', metrics_db=db)

        run = db.get_run('bundle_v_logged')
        assert run['status'] == 'completed'
        assert run['version'] == 'v_logged'
        assert len(db.get_iteration_metrics('bundle_v_logged')) == small_config.als.iterations
        assert 'cf_final_loss' in bundle.metrics

    def test_failed_training_logged(self, interactions, small_config, tmp_path):
        db = TrainingMetricsDB(str(tmp_path / 'training.db'))
        with pytest.raises(InsufficientDataError):
            train_bundle(interactions, {}, config=small_config, version='v_bad', metrics_db=db)
        assert db.get_run('bundle_v_bad')['status'] == 'failed'

    def test_in_memory_metrics_db(self, catalog, interactions, small_config):
        db = TrainingMetricsDB(':memory:')
        embeddings = {cid: f.embedding for cid, f in catalog.items()}
        train_bundle(interactions, embeddings, config=small_config, version='v_mem', metrics_db=db)

        assert db.get_run('bundle_v_mem')['status'] == 'completed'
        assert len(db.get_iteration_metrics('bundle_v_mem')) == small_config.als.iterations
        db.close()

    def test_run_log_file_and_saved_artifacts(self, catalog, interactions, tmp_path):
        config = LearnRankConfig(
            als=ALSConfig(factors=4, iterations=3, regularization=0.1, random_state=42),
            log_dir=str(tmp_path / 'logs'),
            artifacts_dir=str(tmp_path / 'artifacts'),
        )
        embeddings = {cid: f.embedding for cid, f in catalog.items()}
        train_bundle(interactions, embeddings, config=config, version='v_log', log_to_file=True, save=True)

        log_text = (tmp_path / 'logs' / 'training' / 'bundle.log').read_text(encoding='utf-8')
        assert 'Training bundle v_log | factors=4' in log_text
        assert 'Bundle v_log trained in' in log_text
        assert 'cf_final_loss=' in log_text
        assert (tmp_path / 'artifacts' / 'v_log' / 'metadata.json').exists()

    def test_load_latest_bundle(self, trained_bundle, tmp_path):
        assert load_latest_bundle(str(tmp_path / 'nothing')) is None
        assert load_latest_bundle(str(tmp_path)) is None

        save_bundle(replace(trained_bundle, version='v_old', created_at=datetime(2000, 1, 1)), str(tmp_path))
        save_bundle(trained_bundle, str(tmp_path))
        assert load_latest_bundle(str(tmp_path)).version == 'v_test'
