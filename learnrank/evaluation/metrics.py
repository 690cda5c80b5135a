"""
Offline Ranking Metrics.

This module provides ranking-quality metrics computed over a ranked list
truncated to K:
- NDCG@K, MAP@K, Recall@K, Precision@K
- Diversity@K (1 - Herfindahl index of category proportions)
- Serendipity@K (mean unexpectedness of relevant items)
- Novelty@K (mean 1 - popularity)
- Catalog coverage

Example:
    >>> from learnrank.evaluation.metrics import ndcg_at_k, recall_at_k
    >>> ranked = ['c1', 'c5', 'c3', 'c8', 'c2']
    >>> relevant = {'c3', 'c8', 'c10'}
    >>> print(f"NDCG@5: {ndcg_at_k(ranked, relevant, k=5):.3f}")
    >>> print(f"Recall@5: {recall_at_k(ranked, relevant, k=5):.3f}")
"""

from typing import List, Set, Optional, Dict, Any, Sequence, Mapping, Iterable
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, asdict
import logging

import numpy as np

logger = logging.getLogger(__name__)


def herfindahl_diversity(categories: Iterable[Optional[str]]) -> float:
    """
    1 - Herfindahl index of category proportions.

    0.0 when all items share one category (or there are none); approaches
    1.0 as items spread evenly over many categories.
    """
    counts = Counter(c for c in categories if c is not None)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    proportions = np.array(list(counts.values()), dtype=np.float64) / total
    return float(1.0 - np.sum(proportions ** 2))


# ============================================================================
# Abstract Base Metric
# ============================================================================

class BaseMetric(ABC):
    """Ranking metric over one ranked list and its relevance labels."""

    def __init__(self, name: str, k: int = 10):
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")
        self.name = name
        self.k = k

    @abstractmethod
    def compute(
        self,
        ranked: Sequence[str],
        relevant: Set[str],
        k: Optional[int] = None,
        **kwargs
    ) -> float:
        pass

    def _cutoff(self, ranked: Sequence[str], k: Optional[int]) -> List[str]:
        k = k if k is not None else self.k
        return list(ranked[:min(k, len(ranked))])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"


# ============================================================================
# Relevance Metrics
# ============================================================================

class RecallAtK(BaseMetric):
    """
    Recall@K = |Top-K ∩ Relevant| / |Relevant|
    """

    def __init__(self, k: int = 10):
        super().__init__(f"Recall@{k}", k)

    def compute(self, ranked, relevant, k=None, **kwargs) -> float:
        if not ranked or not relevant:
            return 0.0
        top_k = set(self._cutoff(ranked, k))
        return len(top_k & relevant) / len(relevant)


class PrecisionAtK(BaseMetric):
    """
    Precision@K = |Top-K ∩ Relevant| / K

    K is capped at the list length so short lists are not penalized.
    """

    def __init__(self, k: int = 10):
        super().__init__(f"Precision@{k}", k)

    def compute(self, ranked, relevant, k=None, **kwargs) -> float:
        top_k = self._cutoff(ranked, k)
        if not top_k:
            return 0.0
        return len(set(top_k) & relevant) / len(top_k)


class NDCGAtK(BaseMetric):
    """
    NDCG@K with binary relevance.

    Formula:
        DCG@K  = Σ rel_i / log2(i + 2)   for i = 0..K-1
        IDCG@K = DCG of the ideal relevant-first ordering
        NDCG@K = DCG@K / IDCG@K
    """

    def __init__(self, k: int = 10):
        super().__init__(f"NDCG@{k}", k)

    @staticmethod
    def _dcg(relevances: np.ndarray) -> float:
        if len(relevances) == 0:
            return 0.0
        discounts = np.log2(np.arange(len(relevances)) + 2)
        return float(np.sum(relevances / discounts))

    def compute(self, ranked, relevant, k=None, **kwargs) -> float:
        top_k = self._cutoff(ranked, k)
        if not top_k or not relevant:
            return 0.0

        relevances = np.array([1.0 if c in relevant else 0.0 for c in top_k])
        ideal = np.zeros(len(top_k))
        ideal[:min(len(relevant), len(top_k))] = 1.0

        idcg = self._dcg(ideal)
        if idcg == 0:
            return 0.0
        return min(1.0, self._dcg(relevances) / idcg)


class MAPAtK(BaseMetric):
    """
    Average precision at K.

    AP@K = (1 / hits) * Σ Precision@i over relevant positions i <= K;
    MAP@K is its mean across queries.
    """

    def __init__(self, k: int = 10):
        super().__init__(f"MAP@{k}", k)

    def compute(self, ranked, relevant, k=None, **kwargs) -> float:
        top_k = self._cutoff(ranked, k)
        if not top_k or not relevant:
            return 0.0

        hits = 0
        sum_precision = 0.0
        for i, content_id in enumerate(top_k, start=1):
            if content_id in relevant:
                hits += 1
                sum_precision += hits / i
        return sum_precision / hits if hits else 0.0


# ============================================================================
# Beyond-Accuracy Metrics
# ============================================================================

class DiversityAtK(BaseMetric):
    """Category diversity of the top K (1 - HHI)."""

    def __init__(self, k: int = 10):
        super().__init__(f"Diversity@{k}", k)

    def compute(self, ranked, relevant=None, k=None, categories: Optional[Mapping[str, str]] = None, **kwargs) -> float:
        categories = categories or {}
        return herfindahl_diversity(categories.get(c) for c in self._cutoff(ranked, k))


class SerendipityAtK(BaseMetric):
    """
    Mean unexpectedness of the relevant items in the top K.

    Unexpectedness is in [0, 1], typically ``1 - similarity`` to the
    learner's history; items without a value count as 0.
    """

    def __init__(self, k: int = 10):
        super().__init__(f"Serendipity@{k}", k)

    def compute(self, ranked, relevant, k=None, unexpectedness: Optional[Mapping[str, float]] = None, **kwargs) -> float:
        unexpectedness = unexpectedness or {}
        hits = [c for c in self._cutoff(ranked, k) if c in relevant]
        if not hits:
            return 0.0
        return float(np.mean([np.clip(unexpectedness.get(c, 0.0), 0.0, 1.0) for c in hits]))


class NoveltyAtK(BaseMetric):
    """Mean ``1 - popularity`` of the top K, popularity as a ratio in [0, 1]."""

    def __init__(self, k: int = 10):
        super().__init__(f"Novelty@{k}", k)

    def compute(self, ranked, relevant=None, k=None, popularity: Optional[Mapping[str, float]] = None, **kwargs) -> float:
        popularity = popularity or {}
        top_k = self._cutoff(ranked, k)
        if not top_k:
            return 0.0
        return float(np.mean([1.0 - np.clip(popularity.get(c, 0.0), 0.0, 1.0) for c in top_k]))


def catalog_coverage(rankings: Iterable[Sequence[str]], catalog_size: int, k: Optional[int] = None) -> float:
    """Unique recommended items (top K of each list) over catalog size."""
    if catalog_size <= 0:
        raise ValueError(f"catalog_size must be positive, got {catalog_size}")
    unique = set()
    for ranked in rankings:
        unique.update(ranked[:k] if k is not None else ranked)
    return min(1.0, len(unique) / catalog_size)


# ============================================================================
# Convenience Functions
# ============================================================================

def recall_at_k(ranked: Sequence[str], relevant: Set[str], k: int = 10) -> float:
    return RecallAtK(k).compute(ranked, relevant)


def precision_at_k(ranked: Sequence[str], relevant: Set[str], k: int = 10) -> float:
    return PrecisionAtK(k).compute(ranked, relevant)


def ndcg_at_k(ranked: Sequence[str], relevant: Set[str], k: int = 10) -> float:
    return NDCGAtK(k).compute(ranked, relevant)


def average_precision_at_k(ranked: Sequence[str], relevant: Set[str], k: int = 10) -> float:
    return MAPAtK(k).compute(ranked, relevant)


# ============================================================================
# Offline Evaluator
# ============================================================================

@dataclass
class RankedQuery:
    """One evaluated ranking with its labels and item metadata."""
    query_id: str
    ranked: List[str]
    relevant: Set[str]
    categories: Dict[str, str] = field(default_factory=dict)
    unexpectedness: Dict[str, float] = field(default_factory=dict)
    popularity: Dict[str, float] = field(default_factory=dict)


@dataclass
class OfflineMetrics:
    ndcg_at_10: float = 0.0
    ndcg_at_20: float = 0.0
    ndcg_at_50: float = 0.0
    map_at_10: float = 0.0
    map_at_20: float = 0.0
    recall_at_10: float = 0.0
    recall_at_20: float = 0.0
    recall_at_50: float = 0.0
    precision_at_10: float = 0.0
    precision_at_20: float = 0.0
    diversity: float = 0.0
    serendipity: float = 0.0
    novelty: float = 0.0
    coverage: float = 0.0
    num_queries: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OfflineEvaluator:
    """
    Averages ranking metrics across queries.

    Example:
        >>> evaluator = OfflineEvaluator(catalog_size=500)
        >>> metrics = evaluator.evaluate(queries)
        >>> metrics.ndcg_at_10
    """

    METRICS = {
        'ndcg_at_10': NDCGAtK(10),
        'ndcg_at_20': NDCGAtK(20),
        'ndcg_at_50': NDCGAtK(50),
        'map_at_10': MAPAtK(10),
        'map_at_20': MAPAtK(20),
        'recall_at_10': RecallAtK(10),
        'recall_at_20': RecallAtK(20),
        'recall_at_50': RecallAtK(50),
        'precision_at_10': PrecisionAtK(10),
        'precision_at_20': PrecisionAtK(20),
    }

    def __init__(self, catalog_size: int, beyond_accuracy_k: int = 10):
        if catalog_size <= 0:
            raise ValueError(f"catalog_size must be positive, got {catalog_size}")
        self.catalog_size = catalog_size
        self.diversity = DiversityAtK(beyond_accuracy_k)
        self.serendipity = SerendipityAtK(beyond_accuracy_k)
        self.novelty = NoveltyAtK(beyond_accuracy_k)
        self.k = beyond_accuracy_k

    def evaluate_query(self, query: RankedQuery) -> Dict[str, float]:
        scores = {
            name: metric.compute(query.ranked, query.relevant)
            for name, metric in self.METRICS.items()
        }
        scores['diversity'] = self.diversity.compute(query.ranked, categories=query.categories)
        scores['serendipity'] = self.serendipity.compute(
            query.ranked, query.relevant, unexpectedness=query.unexpectedness
        )
        scores['novelty'] = self.novelty.compute(query.ranked, popularity=query.popularity)
        return scores

    def evaluate(self, queries: Sequence[RankedQuery]) -> OfflineMetrics:
        if not queries:
            logger.warning("No queries to evaluate")
            return OfflineMetrics()

        per_query = [self.evaluate_query(q) for q in queries]
        averaged = {
            name: float(np.mean([scores[name] for scores in per_query]))
            for name in per_query[0]
        }
        averaged['coverage'] = catalog_coverage((q.ranked for q in queries), self.catalog_size, self.k)

        metrics = OfflineMetrics(num_queries=len(queries), **averaged)
        logger.info(
            f"Offline evaluation on {len(queries)} queries: "
            f"NDCG@10={metrics.ndcg_at_10:.4f}, Recall@10={metrics.recall_at_10:.4f}"
        )
        return metrics
