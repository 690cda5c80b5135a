"""
Learning Path Optimizer.

Sequences unseen content along the prerequisite graph and adapts a
learner's position in the path to recent performance:
- Kahn topological traversal (prerequisites always come first)
- Ready items ordered by remediation need, then by distance between
  item difficulty and the learner's mastery level
- Rolling-average adaptation: remedial step back below 0.5,
  acceleration above 0.85

Example:
    >>> optimizer = LearningPathOptimizer(content_features)
    >>> order = optimizer.generate_path(['c3', 'c1', 'c2'], completed_ids={'c0'}, performance={})
    >>> path = optimizer.update_path_adaptively(path, [0.3, 0.4, 0.5])
"""

from typing import Dict, List, Optional, Any, Sequence, Mapping, Iterable, Union
from dataclasses import replace
from datetime import datetime
import heapq
import logging
import uuid

import numpy as np

from .base import ScoringModel, UserContext, ordered_unique
from ..types import ContentFeatures, LearningPath, PathStatus, NEUTRAL_SCORE

logger = logging.getLogger(__name__)

MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 4


def mastery_level(performance: Mapping[str, float]) -> float:
    """Map mean performance in [0, 1] onto the 1-4 difficulty scale."""
    if not performance:
        return float(MIN_DIFFICULTY)
    mean = float(np.clip(np.mean(list(performance.values())), 0.0, 1.0))
    return MIN_DIFFICULTY + mean * (MAX_DIFFICULTY - MIN_DIFFICULTY)


class LearningPathOptimizer(ScoringModel):
    """
    Prerequisite-aware sequencing policy.

    Args:
        content_features: Known content (prerequisites, difficulty)
        window: Number of recent observations in the rolling average
        remedial_threshold: Step back when the average is below this
        acceleration_threshold: Step forward when the average is above this
    """

    name = 'learning_path'

    def __init__(
        self,
        content_features: Optional[Mapping[str, ContentFeatures]] = None,
        window: int = 5,
        remedial_threshold: float = 0.5,
        acceleration_threshold: float = 0.85
    ):
        if window <= 0:
            raise ValueError(f"window must be positive, got {window}")
        if remedial_threshold > acceleration_threshold:
            raise ValueError("remedial_threshold must not exceed acceleration_threshold")

        self.content_features: Dict[str, ContentFeatures] = dict(content_features or {})
        self.window = window
        self.remedial_threshold = remedial_threshold
        self.acceleration_threshold = acceleration_threshold

    def _features(
        self,
        content_id: str,
        extra: Optional[Mapping[str, ContentFeatures]] = None
    ) -> Optional[ContentFeatures]:
        if extra and content_id in extra:
            return extra[content_id]
        return self.content_features.get(content_id)

    # ------------------------------------------------------------------
    # Path generation
    # ------------------------------------------------------------------

    def generate_path(
        self,
        candidate_ids: Sequence[str],
        completed_ids: Iterable[str] = (),
        performance: Optional[Mapping[str, float]] = None,
        content_features: Optional[Mapping[str, ContentFeatures]] = None
    ) -> List[str]:
        """
        Order unseen candidates so that no item precedes its prerequisites.

        Args:
            candidate_ids: Content to sequence
            completed_ids: Content the learner already finished (removed)
            performance: Content id -> score in [0, 1] from assessments
            content_features: Request-scoped features overriding the model's table

        Returns:
            Ordered content ids
        """
        performance = dict(performance or {})
        completed = set(completed_ids)
        remaining = [c for c in ordered_unique(candidate_ids) if c not in completed]
        if not remaining:
            return []

        target = mastery_level(performance)
        remaining_set = set(remaining)

        in_degree = {c: 0 for c in remaining}
        dependents: Dict[str, List[str]] = {c: [] for c in remaining}
        blocked = set()

        for content_id in remaining:
            features = self._features(content_id, content_features)
            if features is None:
                continue
            for prereq in features.prerequisites:
                if prereq in remaining_set:
                    in_degree[content_id] += 1
                    dependents[prereq].append(content_id)
                elif prereq not in completed:
                    # prerequisite neither completed nor offered
                    blocked.add(content_id)

        def priority(content_id: str):
            features = self._features(content_id, content_features)
            difficulty = features.difficulty_level if features else MIN_DIFFICULTY
            remedial = performance.get(content_id, 1.0) < self.remedial_threshold
            return (
                content_id in blocked,
                not remedial,
                abs(difficulty - target),
                content_id,
            )

        heap = [(priority(c), c) for c in remaining if in_degree[c] == 0]
        heapq.heapify(heap)
        order: List[str] = []

        while heap:
            _, content_id = heapq.heappop(heap)
            order.append(content_id)
            for dependent in dependents[content_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (priority(dependent), dependent))

        if len(order) < len(remaining):
            placed = set(order)
            cyclic = sorted((c for c in remaining if c not in placed), key=priority)
            logger.warning(f"Prerequisite cycle among {cyclic}, appending in priority order")
            order.extend(cyclic)

        return order

    def create_path(
        self,
        user_id: str,
        candidate_ids: Sequence[str],
        completed_ids: Iterable[str] = (),
        performance: Optional[Mapping[str, float]] = None,
        content_features: Optional[Mapping[str, ContentFeatures]] = None
    ) -> Optional[LearningPath]:
        """Create a new active path, or None when nothing is left to learn."""
        sequence = self.generate_path(candidate_ids, completed_ids, performance, content_features)
        if not sequence:
            return None
        now = datetime.now()
        path = LearningPath(
            path_id=f"path_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            content_sequence=sequence,
            current_step=0,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Created learning path {path.path_id} for {user_id} with {len(sequence)} steps")
        return path

    # ------------------------------------------------------------------
    # Adaptation
    # ------------------------------------------------------------------

    def update_path_adaptively(
        self,
        path: LearningPath,
        latest_performance: Union[Mapping[str, float], Sequence[float]]
    ) -> LearningPath:
        """
        Re-position the learner according to recent performance.

        Args:
            path: Current path
            latest_performance: Ordered observations (oldest first), either a
                sequence of scores or a content id -> score mapping

        Returns:
            Updated copy of the path
        """
        if isinstance(latest_performance, Mapping):
            scores = list(latest_performance.values())
        else:
            scores = list(latest_performance)

        step = path.current_step
        metrics = dict(path.performance_metrics)

        if scores and path.content_sequence:
            recent = scores[-self.window:]
            average = float(np.mean(recent))
            metrics['rolling_average'] = average
            metrics['observations'] = float(len(recent))

            if average < self.remedial_threshold and step > 0:
                step -= 1
                logger.info(f"Path {path.path_id}: remedial step back to {step} (avg={average:.2f})")
            elif average > self.acceleration_threshold:
                step = min(step + 1, len(path.content_sequence) - 1)
                logger.info(f"Path {path.path_id}: accelerating to step {step} (avg={average:.2f})")

        return replace(
            path,
            current_step=step,
            performance_metrics=metrics,
            updated_at=datetime.now(),
        )

    def advance_path(self, path: LearningPath) -> LearningPath:
        """Mark the current step done; completes the path on its last step."""
        if path.is_terminal:
            return path
        if path.current_step >= len(path.content_sequence) - 1:
            return replace(path, status=PathStatus.COMPLETED, updated_at=datetime.now())
        return replace(path, current_step=path.current_step + 1, updated_at=datetime.now())

    def cancel_path(self, path: LearningPath) -> LearningPath:
        return replace(path, status=PathStatus.CANCELLED, updated_at=datetime.now())

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_many(self, user: UserContext, content_ids: Sequence[str]) -> Dict[str, float]:
        """
        Position score ``1 - i / n`` along the generated path.

        Learners without history get the neutral score for every candidate;
        completed content scores 0.
        """
        if not user.has_history:
            return {c: NEUTRAL_SCORE for c in content_ids}

        order = self.generate_path(
            content_ids,
            completed_ids=user.completed_ids,
            performance=user.performance,
            content_features=user.content_features,
        )
        n = len(order)
        position = {c: i for i, c in enumerate(order)}
        return {
            c: (1.0 - position[c] / n) if c in position else 0.0
            for c in content_ids
        }

    def predict(self, user: UserContext, content_id: str) -> Optional[float]:
        if not user.has_history:
            return None
        return self.score_many(user, [content_id])[content_id]

    def get_info(self) -> Dict[str, Any]:
        info = super().get_info()
        info.update({
            'num_content': len(self.content_features),
            'window': self.window,
            'remedial_threshold': self.remedial_threshold,
            'acceleration_threshold': self.acceleration_threshold,
        })
        return info
