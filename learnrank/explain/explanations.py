"""
Recommendation Explanations.

Builds human-readable rationales from the ranking signals:
- Primary reason from the dominant weighted signal
- Supporting signals (modality, difficulty fit, quality, topics, path)
- Feature attributions (weighted signal contributions, LTR importances)
- Similarity trace over the content embedding space
- Rule-based behaviour notes and signal counterfactuals
- Per-user transparency and per-slate bias reports

Example:
    >>> generator = ExplanationGenerator(content_model=cb, ranker=ranker)
    >>> explanation = generator.generate(user_ctx, scores, weights)
    >>> explanation.primary_reason
    'Matches your interests'
"""

from typing import Dict, List, Optional, Any, Sequence, Mapping
from collections import Counter
from datetime import datetime
import logging

import numpy as np

from ..evaluation.metrics import herfindahl_diversity
from ..model.base import UserContext
from ..model.content_based import ContentBasedModel
from ..model.learning_path import mastery_level
from ..model.ltr import BaseRanker
from ..types import (
    ContentFeatures,
    FeatureAttribution,
    LearningPath,
    RankingScores,
    RankingWeights,
    RecommendationExplanation,
    RecommendedItem,
    UserFeatures,
    SIGNALS,
    NEUTRAL_SCORE,
)

logger = logging.getLogger(__name__)

PRIMARY_REASONS = {
    'collaborative': 'Users like you enjoyed this content',
    'content_based': 'Matches your interests',
    'learning_path': 'Recommended based on your learning path',
    'quality_prior': 'High-quality content',
}

SIGNAL_DESCRIPTIONS = {
    'collaborative': 'Similar learning patterns',
    'content_based': 'Topic alignment with your profile',
    'learning_path': 'Fits your recommended progression',
    'quality_prior': 'Engagement and completion of this content',
}

COLD_START_REASON = 'Popular and highly-rated content for new learners'
COLD_START_CONFIDENCE = 0.3

BASE_CONFIDENCE = 0.3
HIGH_QUALITY = 0.8
TOPIC_AFFINITY_MIN = 0.5
DIFFICULTY_FIT_TOLERANCE = 0.5
SIMILARITY_TRACE_SIZE = 3

# Behaviour rule thresholds
FAST_LEARNER_VELOCITY = 1.5
STRUGGLING_SUCCESS_RATIO = 0.5
HIGH_ENGAGEMENT = 0.8
LOW_COMPLETION = 0.3
DIVERSE_TOPICS = 5


class ExplanationGenerator:
    """
    Explains a single ranked item.

    Args:
        content_model: Content-based model used for the similarity trace
        ranker: Trained LTR model whose top features are reported
        trace_size: Number of similar items in the trace
    """

    def __init__(
        self,
        content_model: Optional[ContentBasedModel] = None,
        ranker: Optional[BaseRanker] = None,
        trace_size: int = SIMILARITY_TRACE_SIZE
    ):
        self.content_model = content_model
        self.ranker = ranker
        self.trace_size = trace_size

    def generate(
        self,
        user: UserContext,
        scores: RankingScores,
        weights: RankingWeights,
        content: Optional[ContentFeatures] = None,
        path: Optional[LearningPath] = None
    ) -> RecommendationExplanation:
        content = content or user.content_features.get(scores.content_id)
        if user.is_cold_start:
            return self._cold_start(scores, content)

        contributions = self.contributions(scores, weights)
        dominant = max(SIGNALS, key=lambda name: (contributions[name], -SIGNALS.index(name)))

        return RecommendationExplanation(
            primary_reason=PRIMARY_REASONS[dominant],
            supporting_signals=self.supporting_signals(user, scores.content_id, content, path),
            feature_attributions=self.attributions(scores, weights),
            similarity_trace=self.similarity_trace(scores.content_id),
            confidence=self.confidence(scores, weights),
        )

    def _cold_start(
        self,
        scores: RankingScores,
        content: Optional[ContentFeatures]
    ) -> RecommendationExplanation:
        supporting = []
        if content is not None and content.quality_score >= HIGH_QUALITY:
            supporting.append('Highly rated by other learners')
        if content is not None and content.popularity > 0:
            supporting.append(f"Chosen by {content.popularity:.0%} of learners")
        return RecommendationExplanation(
            primary_reason=COLD_START_REASON,
            supporting_signals=supporting,
            feature_attributions=[
                FeatureAttribution('quality_prior', scores.quality_prior, SIGNAL_DESCRIPTIONS['quality_prior'])
            ],
            similarity_trace=None,
            confidence=COLD_START_CONFIDENCE,
        )

    @staticmethod
    def contributions(scores: RankingScores, weights: RankingWeights) -> Dict[str, float]:
        """Weighted contribution of every signal to the hybrid score."""
        weight_map = weights.components()
        values = scores.components()
        return {name: weight_map[name] * values[name] for name in SIGNALS}

    @staticmethod
    def confidence(scores: RankingScores, weights: RankingWeights) -> float:
        """0.3 plus 0.7 times the weight share carried by informative signals."""
        weight_map = weights.components()
        total = sum(weight_map.values())
        if total <= 0:
            return BASE_CONFIDENCE
        informed = sum(
            weight_map[name] for name, value in scores.components().items()
            if not np.isclose(value, NEUTRAL_SCORE)
        )
        return float(BASE_CONFIDENCE + (1.0 - BASE_CONFIDENCE) * informed / total)

    def supporting_signals(
        self,
        user: UserContext,
        content_id: str,
        content: Optional[ContentFeatures],
        path: Optional[LearningPath] = None
    ) -> List[str]:
        signals = []
        features = user.features

        if content is not None:
            if features is not None and features.preferred_modality == content.modality:
                signals.append(f"Available as {content.modality.value} (your preferred format)")

            if user.performance:
                mastery = mastery_level(user.performance)
                if abs(content.difficulty_level - mastery) <= DIFFICULTY_FIT_TOLERANCE:
                    signals.append('Matches your current level')

            if content.quality_score >= HIGH_QUALITY:
                signals.append('Highly rated by other learners')

            if features is not None and content.topics:
                topic, affinity = max(
                    ((t, features.topic_affinity.get(t, 0.0)) for t in content.topics),
                    key=lambda x: (x[1], x[0]),
                )
                if affinity >= TOPIC_AFFINITY_MIN:
                    signals.append(f"Related to your interest in {topic}")

        if path is not None and content_id in path.content_sequence:
            step = path.content_sequence.index(content_id)
            signals.append(f"Step {step + 1} of {len(path.content_sequence)} in your learning path")

        return signals

    def attributions(self, scores: RankingScores, weights: RankingWeights) -> List[FeatureAttribution]:
        values = scores.components()
        attributions = []
        for name, contribution in self.contributions(scores, weights).items():
            direction = 'raises' if values[name] > NEUTRAL_SCORE else 'lowers' if values[name] < NEUTRAL_SCORE else 'neutral'
            attributions.append(
                FeatureAttribution(name, float(contribution), f"{SIGNAL_DESCRIPTIONS[name]} ({direction})")
            )

        if self.ranker is not None and self.ranker.is_trained:
            for feature, importance in self.ranker.top_features(3):
                attributions.append(FeatureAttribution(feature, float(importance), 'Learning-to-rank feature'))

        attributions.sort(key=lambda a: (-a.importance, a.feature))
        return attributions

    def similarity_trace(self, content_id: str) -> Optional[List[Dict[str, Any]]]:
        if self.content_model is None or not self.content_model.has_content(content_id):
            return None
        similar = self.content_model.get_similar_content(content_id, self.trace_size)
        if not similar:
            return None
        return [{'content_id': cid, 'similarity': sim} for cid, sim in similar]


def explain_behaviour(features: Optional[UserFeatures]) -> str:
    """Rule-based note on how the learner's profile shapes their slate."""
    if features is None:
        return 'We are still learning your preferences, so we start with popular content.'

    rules = []
    if features.learning_velocity >= FAST_LEARNER_VELOCITY:
        rules.append('You are a fast learner, so we prioritize advanced content')
    elif features.success_failure_ratio < STRUGGLING_SUCCESS_RATIO:
        rules.append('We detected you need support in this area, recommending foundational content')
    if features.engagement_score > HIGH_ENGAGEMENT:
        rules.append('Based on your high engagement history, we prioritize content like this')
    if features.completion_rate < LOW_COMPLETION:
        rules.append('We are recommending engaging content to keep you motivated')
    if len(features.topic_affinity) > DIVERSE_TOPICS:
        rules.append('You have diverse interests, so we cross-recommend across your topics')

    return '. '.join(rules) + '.' if rules else ''


def counterfactuals(
    scores: Mapping[str, RankingScores],
    weights: RankingWeights
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Rank shift of each item if one signal were neutral for it.

    Other items keep their scores. Only non-zero shifts are reported.
    """
    if not scores:
        return {}

    weight_map = weights.components()
    ordered = sorted(scores.values(), key=lambda s: (-s.final_score, s.content_id))
    ranks = {s.content_id: i + 1 for i, s in enumerate(ordered)}

    results: Dict[str, List[Dict[str, Any]]] = {}
    for item in ordered:
        changes = []
        for name in SIGNALS:
            value = getattr(item, name)
            if np.isclose(value, NEUTRAL_SCORE):
                continue
            hybrid = item.hybrid_score + weight_map[name] * (NEUTRAL_SCORE - value)
            if item.ltr_score is not None:
                final = (1.0 - weights.ltr_blend_alpha) * hybrid + weights.ltr_blend_alpha * item.ltr_score
            else:
                final = hybrid

            new_rank = 1 + sum(
                1 for other in ordered
                if other.content_id != item.content_id
                and (-other.final_score, other.content_id) < (-final, item.content_id)
            )
            shift = new_rank - ranks[item.content_id]
            if shift == 0:
                continue
            movement = 'drop' if shift > 0 else 'rise'
            changes.append({
                'signal': name,
                'original_rank': ranks[item.content_id],
                'counterfactual_rank': new_rank,
                'shift': shift,
                'message': f"If {name.replace('_', ' ')} were neutral this item would {movement} {abs(shift)} rank(s)",
            })
        if changes:
            results[item.content_id] = changes
    return results


class TransparencyReporter:
    """Aggregate views over explained slates."""

    EXPLAINABLE_FEATURES = [
        'Your interest in topics',
        'Your learning pace and mastery',
        'Content quality scores',
        'Prerequisite alignment',
    ]
    BLACK_BOX_FACTORS = [
        'Embedding similarity',
        'Latent collaborative factors',
    ]

    def transparency_report(
        self,
        user_id: str,
        items: Sequence[RecommendedItem],
        top_n: int = 5
    ) -> Dict[str, Any]:
        reasons: Counter = Counter()
        contributions: Dict[str, float] = {}
        for item in items:
            if item.explanation is None:
                continue
            reasons[item.explanation.primary_reason] += 1
            reasons.update(item.explanation.supporting_signals)
            for attribution in item.explanation.feature_attributions:
                contributions[attribution.feature] = contributions.get(attribution.feature, 0.0) + attribution.importance

        top_reasons = sorted(reasons.items(), key=lambda x: (-x[1], x[0]))[:top_n]
        return {
            'user_id': user_id,
            'report_date': datetime.now().isoformat(),
            'num_recommendations': len(items),
            'top_reasons': [{'reason': r, 'frequency': f} for r, f in top_reasons],
            'feature_contributions': contributions,
            'explainable_features': list(self.EXPLAINABLE_FEATURES),
            'black_box_factors': list(self.BLACK_BOX_FACTORS),
        }

    def bias_report(
        self,
        items: Sequence[RecommendedItem],
        content_features: Mapping[str, ContentFeatures],
        modality_threshold: float = 0.7,
        diversity_threshold: float = 0.3
    ) -> Dict[str, Any]:
        """Modality, difficulty and category concentration of a slate."""
        known = [content_features[i.content_id] for i in items if i.content_id in content_features]
        modalities = Counter(c.modality.value for c in known)
        difficulties = Counter(c.difficulty_level for c in known)
        diversity = herfindahl_diversity(c.category for c in known)

        biases = []
        if known:
            modality, count = max(modalities.items(), key=lambda x: (x[1], x[0]))
            if count > len(known) * modality_threshold:
                biases.append(f"Overrepresentation of {modality} content (possible modality bias)")

            avg_difficulty = float(np.mean([c.difficulty_level for c in known]))
            if avg_difficulty > 2.5:
                biases.append('Skewed toward advanced content')
            elif avg_difficulty < 1.5:
                biases.append('Skewed toward beginner content')

            if diversity < diversity_threshold:
                biases.append(f"Low category diversity ({diversity:.2f})")
        else:
            avg_difficulty = 0.0

        if biases:
            logger.info(f"Bias report flagged {len(biases)} issue(s)")

        return {
            'num_items': len(known),
            'modality_distribution': dict(sorted(modalities.items())),
            'difficulty_distribution': {int(k): v for k, v in sorted(difficulties.items())},
            'average_difficulty': avg_difficulty,
            'category_diversity': diversity,
            'potential_biases': biases,
        }
