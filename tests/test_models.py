"""Tests for the ALS, content-based and learning-to-rank models."""

from datetime import datetime, timedelta

import numpy as np
import pytest

from learnrank.errors import InsufficientDataError
from learnrank.model import (
    ALSModel,
    ContentBasedModel,
    GradientBoostedRanker,
    LinearRanker,
    LTRExample,
    UserContext,
    build_interaction_matrix,
    build_ltr_features,
    cosine_similarity,
    create_ranker,
    gaussian_elimination,
)
from learnrank.types import ContentFeatures, ContentModality, UserContentInteraction, UserFeatures


# ============================================================================
# ALS
# ============================================================================

class TestGaussianElimination:
    def test_solves_system(self):
        A = np.array([[4.0, 1.0, 2.0], [1.0, 5.0, 1.0], [2.0, 1.0, 6.0]])
        b = np.array([1.0, 2.0, 3.0])
        x = gaussian_elimination(A, b)
        np.testing.assert_allclose(A @ x, b, atol=1e-10)

    def test_needs_pivoting(self):
        A = np.array([[0.0, 1.0], [1.0, 0.0]])
        x = gaussian_elimination(A, np.array([2.0, 3.0]))
        np.testing.assert_allclose(x, [3.0, 2.0])

    def test_singular_returns_none(self):
        A = np.array([[1.0, 2.0], [2.0, 4.0]])
        assert gaussian_elimination(A, np.array([1.0, 2.0])) is None


class TestInteractionMatrix:
    def test_duplicates_keep_latest(self):
        t0 = datetime(2026, 1, 1)
        rows = [
            UserContentInteraction('u1', 'c1', 1.0, timestamp=t0),
            UserContentInteraction('u1', 'c1', 4.0, timestamp=t0 + timedelta(days=1)),
            UserContentInteraction('u2', 'c2', 2.0, timestamp=t0),
        ]
        matrix, users, items = build_interaction_matrix(rows)
        assert matrix.shape == (2, 2)
        assert matrix[users.index('u1'), items.index('c1')] == 4.0

    def test_empty_raises(self):
        with pytest.raises(InsufficientDataError):
            build_interaction_matrix([])


class TestALSModel:
    def test_fit_reports_losses(self, interactions):
        model = ALSModel(factors=4, iterations=4, regularization=0.1, random_state=0)
        seen = []
        summary = model.fit(interactions, iteration_callback=lambda i, loss, s: seen.append(i))
        assert seen == [1, 2, 3, 4]
        assert len(model.training_history) == 4
        assert summary['num_users'] == 6
        assert model.training_history[-1]['loss'] <= model.training_history[0]['loss']

    def test_scores_in_unit_interval(self, interactions, catalog):
        model = ALSModel(factors=4, iterations=3, random_state=0).train(interactions)
        scores = model.score_items('u0', sorted(catalog))
        assert all(0.0 <= s <= 1.0 for s in scores.values())

    def test_unknown_pairs_are_neutral(self, interactions):
        model = ALSModel(factors=4, iterations=2, random_state=0).train(interactions)
        assert model.predict_score('nobody', 'intro') == 0.5
        assert model.predict_score('u0', 'unknown') == 0.5
        assert model.predict(UserContext(user_id='nobody'), 'intro') is None

    def test_seeded_training_is_deterministic(self, interactions):
        a = ALSModel(factors=4, iterations=3, random_state=11).train(interactions)
        b = ALSModel(factors=4, iterations=3, random_state=11).train(interactions)
        np.testing.assert_array_equal(a.user_factors, b.user_factors)

    def test_empty_training_fails_fast(self):
        with pytest.raises(InsufficientDataError):
            ALSModel(factors=2, iterations=1).fit([])

    def test_invalid_params(self):
        with pytest.raises(ValueError):
            ALSModel(factors=0)
        with pytest.raises(ValueError):
            ALSModel(iterations=0)


# ============================================================================
# Content-based
# ============================================================================

class TestCosineSimilarity:
    def test_symmetric_and_bounded(self):
        rng = np.random.default_rng(3)
        for _ in range(20):
            a, b = rng.normal(size=6), rng.normal(size=6)
            assert cosine_similarity(a, b) == cosine_similarity(b, a)
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    def test_self_similarity_is_one(self):
        a = np.array([0.3, -1.2, 4.0])
        assert cosine_similarity(a, a) == pytest.approx(1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


class TestContentBasedModel:
    @pytest.fixture
    def model(self):
        return ContentBasedModel.build_from_embeddings({
            'a': [1.0, 0.0],
            'b': [0.9, 0.1],
            'c': [0.0, 1.0],
            'd': [-1.0, 0.0],
        })

    def test_similar_content_excludes_self(self, model):
        similar = model.get_similar_content('a', k=3)
        assert [cid for cid, _ in similar] == ['b', 'c', 'd']
        assert 'a' not in dict(similar)

    def test_unknown_content(self, model):
        assert model.get_similar_content('zzz') == []

    def test_score_mapping(self, model):
        user = UserContext(user_id='u', embedding=np.array([1.0, 0.0]))
        scores = model.score_many(user, ['a', 'd', 'missing'])
        assert scores['a'] == pytest.approx(1.0)
        assert scores['d'] == pytest.approx(0.0)
        assert scores['missing'] == 0.5

    def test_no_user_embedding_is_neutral(self, model):
        scores = model.score_many(UserContext(user_id='u'), ['a', 'b'])
        assert scores == {'a': 0.5, 'b': 0.5}

    def test_raw_scores_omit_unknown(self, model):
        raw = model.score_content([0.0, 1.0], ['c', 'x'])
        assert raw == {'c': pytest.approx(1.0)}

    def test_empty_embeddings(self):
        with pytest.raises(InsufficientDataError):
            ContentBasedModel.build_from_embeddings({})

    def test_mixed_dimensions(self):
        with pytest.raises(ValueError):
            ContentBasedModel.build_from_embeddings({'a': [1.0], 'b': [1.0, 2.0]})


# ============================================================================
# Learning to rank
# ============================================================================

def _examples(n=60, seed=5):
    rng = np.random.default_rng(seed)
    examples = []
    for _ in range(n):
        features = {
            'collaborative': rng.random(),
            'content_based': rng.random(),
            'learning_path': rng.random(),
            'quality_prior': rng.random(),
        }
        label = 0.7 * features['content_based'] + 0.3 * features['quality_prior']
        examples.append(LTRExample(features, label))
    return examples


class TestRankers:
    def test_linear_loss_decreases(self):
        ranker = LinearRanker(iterations=200, learning_rate=0.1).train(_examples())
        assert ranker.loss_history[-1] < ranker.loss_history[0]
        top = [name for name, _ in ranker.top_features(2)]
        assert 'content_based' in top

    def test_predictions_clamped(self):
        ranker = LinearRanker(iterations=50, learning_rate=0.1).train(_examples())
        assert 0.0 <= ranker.predict({'content_based': 50.0}) <= 1.0

    def test_untrained_predict_raises(self):
        with pytest.raises(RuntimeError):
            LinearRanker().predict({'collaborative': 0.5})

    def test_no_examples(self):
        with pytest.raises(InsufficientDataError):
            LinearRanker().train([])

    def test_re_rank_orders_by_score(self):
        ranker = LinearRanker(iterations=300, learning_rate=0.2).train(_examples())
        ranked = ranker.re_rank({
            'low': {'content_based': 0.1, 'quality_prior': 0.1},
            'high': {'content_based': 0.9, 'quality_prior': 0.9},
        })
        assert [cid for cid, _ in ranked] == ['high', 'low']

    def test_serialization(self):
        ranker = LinearRanker(iterations=20, learning_rate=0.05).train(_examples())
        restored = LinearRanker.from_dict(ranker.to_dict())
        features = {'content_based': 0.4, 'quality_prior': 0.8}
        assert restored.predict(features) == ranker.predict(features)

    def test_gradient_boosted(self):
        ranker = GradientBoostedRanker(n_estimators=20, max_depth=2).train(_examples())
        importance = ranker.feature_importance()
        assert max(importance, key=importance.get) == 'content_based'

    def test_factory(self):
        assert isinstance(create_ranker('linear', iterations=5), LinearRanker)
        assert isinstance(create_ranker('gbdt', n_estimators=5), GradientBoostedRanker)
        with pytest.raises(ValueError):
            create_ranker('neural')

    def test_invalid_hyperparameters(self):
        with pytest.raises(ValueError):
            LinearRanker(iterations=0)
        with pytest.raises(ValueError):
            LinearRanker(learning_rate=0.0)

    def test_feature_engineering(self):
        content = ContentFeatures(
            content_id='c1',
            difficulty_level=4,
            modality=ContentModality.VIDEO,
            topics=['python'],
        )
        user = UserFeatures(
            user_id='u1',
            topic_affinity={'python': 0.8},
            preferred_modality=ContentModality.VIDEO,
        )
        features = build_ltr_features({'collaborative': 0.7}, content, user)
        assert features['collaborative'] == 0.7
        assert features['content_based'] == 0.5
        assert features['difficulty'] == 1.0
        assert features['topic_affinity'] == 0.8
        assert features['modality_match'] == 1.0
