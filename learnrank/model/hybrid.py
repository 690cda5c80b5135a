"""
Hybrid Ranking Engine.

Combines the four ranking signals with variant-specific weights:

    hybrid = w_cf * CF + w_cb * CB + w_lp * LP + w_q * Quality
    final  = (1 - alpha) * hybrid + alpha * ltr      (when an LTR model is active)

Signals are evaluated through the ScoringModel interface, optionally in
parallel on an injected executor. The weighted sum is always taken in the
same order so scores are reproducible bit-for-bit.

Example:
    >>> engine = HybridRankingEngine({'collaborative': als, 'content_based': cb,
    ...                               'learning_path': lpo})
    >>> scores = engine.score_content(user_ctx, ['c1', 'c2'], weights)
    >>> top = engine.rank(scores, k=10)
"""

from typing import Dict, List, Optional, Any, Sequence, Mapping
from concurrent.futures import Executor
import logging

from .base import ScoringModel, UserContext, QualityPriorModel, clamp_unit, ordered_unique
from .ltr import BaseRanker, build_ltr_features
from ..errors import ValidationError
from ..types import RankingScores, RankingWeights, SIGNALS, NEUTRAL_SCORE

logger = logging.getLogger(__name__)


def validate_k(k: int) -> int:
    if not isinstance(k, int) or isinstance(k, bool) or k <= 0:
        raise ValidationError(f"k must be a positive integer, got {k!r}")
    return k


class HybridRankingEngine:
    """
    Weighted combination of ranking signals with optional LTR blending.

    Args:
        signals: Signal name -> ScoringModel; missing signals score neutral
        ranker: Optional trained LTR model
        executor: Optional executor used to score signals in parallel
    """

    def __init__(
        self,
        signals: Mapping[str, ScoringModel],
        ranker: Optional[BaseRanker] = None,
        executor: Optional[Executor] = None
    ):
        unknown = set(signals) - set(SIGNALS)
        if unknown:
            raise ValueError(f"Unknown signals: {sorted(unknown)}; expected {SIGNALS}")

        self.signals: Dict[str, ScoringModel] = dict(signals)
        self.signals.setdefault('quality_prior', QualityPriorModel())
        self.ranker = ranker
        self.executor = executor

    @property
    def ltr_active(self) -> bool:
        return self.ranker is not None and self.ranker.is_trained

    def _component_scores(
        self,
        user: UserContext,
        content_ids: List[str]
    ) -> Dict[str, Dict[str, float]]:
        if self.executor is None:
            return {
                name: model.score_many(user, content_ids)
                for name, model in self.signals.items()
            }
        futures = {
            name: self.executor.submit(model.score_many, user, content_ids)
            for name, model in self.signals.items()
        }
        return {name: future.result() for name, future in futures.items()}

    def score_content(
        self,
        user: UserContext,
        content_ids: Sequence[str],
        weights: RankingWeights
    ) -> Dict[str, RankingScores]:
        """
        Score every candidate.

        Args:
            user: Request snapshot (id, embedding, history, content features)
            content_ids: Candidates (duplicates ignored)
            weights: Variant weights, validated on construction

        Returns:
            Content id -> RankingScores
        """
        ids = ordered_unique(content_ids)
        if not ids:
            return {}

        components = self._component_scores(user, ids)
        weight_map = weights.components()
        alpha = weights.ltr_blend_alpha if self.ltr_active else 0.0

        results: Dict[str, RankingScores] = {}
        ltr_inputs: Dict[str, Dict[str, float]] = {}

        for content_id in ids:
            values = {
                name: clamp_unit(components.get(name, {}).get(content_id, NEUTRAL_SCORE))
                for name in SIGNALS
            }
            hybrid = 0.0
            for name in SIGNALS:
                hybrid += weight_map[name] * values[name]

            results[content_id] = RankingScores(
                content_id=content_id,
                hybrid_score=hybrid,
                final_score=hybrid,
                **values,
            )
            if alpha > 0:
                ltr_inputs[content_id] = build_ltr_features(
                    values, user.content_features.get(content_id), user.features
                )

        if ltr_inputs:
            ltr_scores = self.ranker.predict_many(ltr_inputs)
            for content_id, ltr_score in ltr_scores.items():
                scores = results[content_id]
                scores.ltr_score = ltr_score
                scores.final_score = (1.0 - alpha) * scores.hybrid_score + alpha * ltr_score

        return results

    def rank(self, scores: Mapping[str, RankingScores], k: int) -> List[RankingScores]:
        """Top-k by final score descending, ties by content id ascending."""
        validate_k(k)
        ordered = sorted(scores.values(), key=lambda s: (-s.final_score, s.content_id))
        return ordered[:k]

    def rank_candidates(
        self,
        user: UserContext,
        content_ids: Sequence[str],
        weights: RankingWeights,
        k: int
    ) -> List[RankingScores]:
        validate_k(k)
        return self.rank(self.score_content(user, content_ids, weights), k)

    def get_info(self) -> Dict[str, Any]:
        return {
            'signals': {name: model.get_info() for name, model in self.signals.items()},
            'ltr_active': self.ltr_active,
            'ranker': self.ranker.__class__.__name__ if self.ranker else None,
            'parallel': self.executor is not None,
        }
