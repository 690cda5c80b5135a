"""
ALS Collaborative Filtering Model.

Alternating Least Squares on implicit engagement feedback:
- Latent user/content factors of dimension D, small random init
- Per-row regularized least squares solved by Gaussian elimination
  with partial pivoting
- Per-iteration loss tracking and progress logging
- Neutral 0.5 score for unknown users or content (cold start)

Example:
    >>> from learnrank.model.als import ALSModel
    >>> model = ALSModel(factors=32, iterations=10, random_state=42)
    >>> summary = model.fit(interactions)
    >>> model.predict_score('u1', 'c7')
"""

import logging
import time
from typing import Dict, Any, Optional, List, Sequence, Tuple, Callable, Iterable

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from .base import ScoringModel, UserContext, clamp_unit
from ..errors import InsufficientDataError
from ..types import UserContentInteraction, NEUTRAL_SCORE

logger = logging.getLogger(__name__)

PIVOT_EPSILON = 1e-10


def gaussian_elimination(A: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    """
    Solve ``A x = b`` with partial pivoting.

    Returns None when a pivot falls below PIVOT_EPSILON (singular system).
    """
    n = len(b)
    M = np.hstack([np.asarray(A, dtype=np.float64), np.asarray(b, dtype=np.float64).reshape(-1, 1)])

    for col in range(n):
        pivot = col + int(np.argmax(np.abs(M[col:, col])))
        if abs(M[pivot, col]) < PIVOT_EPSILON:
            return None
        if pivot != col:
            M[[col, pivot]] = M[[pivot, col]]
        factors = M[col + 1:, col] / M[col, col]
        M[col + 1:] -= np.outer(factors, M[col])

    x = np.zeros(n)
    for i in range(n - 1, -1, -1):
        x[i] = (M[i, n] - M[i, i + 1:n] @ x[i + 1:]) / M[i, i]
    return x


def build_interaction_matrix(
    interactions: Iterable[UserContentInteraction]
) -> Tuple[csr_matrix, List[str], List[str]]:
    """
    Build a users x content CSR matrix of implicit feedback.

    Repeated (user, content) pairs keep the most recent observation.

    Returns:
        (matrix, user_ids, content_ids) with row/column order matching the ids
    """
    df = pd.DataFrame(
        [
            {
                'user_id': x.user_id,
                'content_id': x.content_id,
                'feedback': float(x.implicit_feedback),
                'timestamp': x.timestamp,
            }
            for x in interactions
        ],
        columns=['user_id', 'content_id', 'feedback', 'timestamp'],
    )
    if df.empty:
        raise InsufficientDataError("Cannot train collaborative filtering model: no interactions")

    df = (
        df.sort_values('timestamp', kind='mergesort')
        .drop_duplicates(subset=['user_id', 'content_id'], keep='last')
    )

    user_cat = pd.Categorical(df['user_id'])
    item_cat = pd.Categorical(df['content_id'])
    matrix = csr_matrix(
        (df['feedback'].to_numpy(), (user_cat.codes, item_cat.codes)),
        shape=(len(user_cat.categories), len(item_cat.categories)),
    )
    return matrix, [str(u) for u in user_cat.categories], [str(i) for i in item_cat.categories]


class ALSModel(ScoringModel):
    """
    Implicit-feedback matrix factorization trained by ALS.

    Parameters are read-only after ``fit``; retraining builds a new model
    that the registry swaps in.

    Example:
        >>> model = ALSModel(factors=100, iterations=10, regularization=0.01)
        >>> model.fit(interactions)
        >>> scores = model.score_items('u1', ['c1', 'c2'])
    """

    name = 'collaborative'

    def __init__(
        self,
        factors: int = 100,
        iterations: int = 10,
        regularization: float = 0.01,
        init_scale: float = 0.01,
        random_state: Optional[int] = None
    ):
        if factors <= 0:
            raise ValueError(f"factors must be positive, got {factors}")
        if iterations <= 0:
            raise ValueError(f"iterations must be positive, got {iterations}")

        self.factors = factors
        self.iterations = iterations
        self.regularization = regularization
        self.init_scale = init_scale
        self.random_state = random_state

        self.user_factors: Optional[np.ndarray] = None
        self.item_factors: Optional[np.ndarray] = None
        self.user_index: Dict[str, int] = {}
        self.item_index: Dict[str, int] = {}
        self.training_history: List[Dict[str, Any]] = []
        self._rng = np.random.default_rng(random_state)

    @property
    def is_fitted(self) -> bool:
        return self.user_factors is not None and self.item_factors is not None

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _random_vectors(self, n: int) -> np.ndarray:
        return (self._rng.random((n, self.factors)) - 0.5) * self.init_scale

    def _solve_side(self, R: csr_matrix, fixed: np.ndarray) -> np.ndarray:
        """Solve every row of R against the fixed factor matrix."""
        out = np.empty((R.shape[0], self.factors))
        reg = self.regularization * np.eye(self.factors)

        for row in range(R.shape[0]):
            start, end = R.indptr[row], R.indptr[row + 1]
            if start == end:
                out[row] = self._random_vectors(1)[0]
                continue

            Y = fixed[R.indices[start:end]]
            r = R.data[start:end]
            solution = gaussian_elimination(Y.T @ Y + reg, Y.T @ r)
            out[row] = solution if solution is not None else self._random_vectors(1)[0]

        return out

    def _loss(self, R: csr_matrix) -> float:
        coo = R.tocoo()
        preds = np.einsum('ij,ij->i', self.user_factors[coo.row], self.item_factors[coo.col])
        error = float(np.sum((coo.data - preds) ** 2))
        penalty = self.regularization * float(
            np.sum(self.user_factors ** 2) + np.sum(self.item_factors ** 2)
        )
        return error + penalty

    def fit(
        self,
        interactions: Iterable[UserContentInteraction],
        iteration_callback: Optional[Callable[[int, float, float], None]] = None
    ) -> Dict[str, Any]:
        """
        Train factors from implicit interactions.

        Args:
            interactions: Interaction log (duplicates keep the latest)
            iteration_callback: Optional ``fn(iteration, loss, seconds)``

        Returns:
            Training summary dict

        Raises:
            InsufficientDataError: If there are no interactions
        """
        R, user_ids, item_ids = build_interaction_matrix(interactions)
        Rt = R.T.tocsr()

        logger.info("=" * 60)
        logger.info("Starting ALS Training")
        logger.info("=" * 60)
        logger.info(f"Training data: shape={R.shape}, nnz={R.nnz}")
        logger.info(
            f"Params: factors={self.factors}, iterations={self.iterations}, "
            f"regularization={self.regularization}"
        )

        self.user_index = {u: i for i, u in enumerate(user_ids)}
        self.item_index = {c: i for i, c in enumerate(item_ids)}
        self.user_factors = self._random_vectors(len(user_ids))
        self.item_factors = self._random_vectors(len(item_ids))
        self.training_history = []

        start = time.time()
        for iteration in range(1, self.iterations + 1):
            iter_start = time.time()
            logger.info(f"Iteration {iteration}/{self.iterations} started...")

            self.user_factors = self._solve_side(R, self.item_factors)
            self.item_factors = self._solve_side(Rt, self.user_factors)

            loss = self._loss(R)
            duration = time.time() - iter_start
            self.training_history.append({
                'iteration': iteration,
                'loss': loss,
                'duration_seconds': duration,
            })
            logger.info(f"Iteration {iteration}/{self.iterations} | loss={loss:.6f} | {duration:.2f}s")
            if iteration_callback is not None:
                iteration_callback(iteration, loss, duration)

        total = time.time() - start
        summary = {
            'num_users': len(user_ids),
            'num_items': len(item_ids),
            'nnz': int(R.nnz),
            'iterations': self.iterations,
            'final_loss': self.training_history[-1]['loss'],
            'training_time_seconds': total,
            'user_factors_shape': self.user_factors.shape,
            'item_factors_shape': self.item_factors.shape,
        }
        logger.info(f"ALS training complete in {total:.2f}s, final loss={summary['final_loss']:.6f}")
        return summary

    def train(self, interactions: Iterable[UserContentInteraction]) -> 'ALSModel':
        self.fit(interactions)
        return self

    @classmethod
    def from_factors(
        cls,
        user_ids: Sequence[str],
        item_ids: Sequence[str],
        user_factors: np.ndarray,
        item_factors: np.ndarray,
        **params
    ) -> 'ALSModel':
        """Rebuild a trained model from saved artifacts."""
        if user_factors.shape[1] != item_factors.shape[1]:
            raise ValueError("User and item factors must share the same dimension")
        params['factors'] = user_factors.shape[1]
        model = cls(**params)
        model.user_factors = np.asarray(user_factors, dtype=np.float64)
        model.item_factors = np.asarray(item_factors, dtype=np.float64)
        model.user_index = {u: i for i, u in enumerate(user_ids)}
        model.item_index = {c: i for i, c in enumerate(item_ids)}
        return model

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def predict_score(self, user_id: str, content_id: str) -> float:
        """Score in [0, 1]; 0.5 for unknown users or content."""
        u = self.user_index.get(user_id)
        i = self.item_index.get(content_id)
        if not self.is_fitted or u is None or i is None:
            return NEUTRAL_SCORE
        return clamp_unit(float(self.user_factors[u] @ self.item_factors[i]) / self.factors)

    def score_items(self, user_id: str, content_ids: Sequence[str]) -> Dict[str, float]:
        """Vectorized ``predict_score`` over several content ids."""
        u = self.user_index.get(user_id)
        if not self.is_fitted or u is None:
            return {content_id: NEUTRAL_SCORE for content_id in content_ids}

        known = [c for c in content_ids if c in self.item_index]
        scores = {content_id: NEUTRAL_SCORE for content_id in content_ids}
        if known:
            idx = np.array([self.item_index[c] for c in known])
            raw = self.item_factors[idx] @ self.user_factors[u] / self.factors
            for content_id, value in zip(known, np.clip(raw, 0.0, 1.0)):
                scores[content_id] = float(value)
        return scores

    def predict(self, user: UserContext, content_id: str) -> Optional[float]:
        if user.user_id not in self.user_index or content_id not in self.item_index:
            return None
        return self.predict_score(user.user_id, content_id)

    def score_many(self, user: UserContext, content_ids: Sequence[str]) -> Dict[str, float]:
        return self.score_items(user.user_id, content_ids)

    def get_info(self) -> Dict[str, Any]:
        info = super().get_info()
        info.update({
            'factors': self.factors,
            'iterations': self.iterations,
            'regularization': self.regularization,
            'num_users': len(self.user_index),
            'num_items': len(self.item_index),
            'fitted': self.is_fitted,
        })
        return info

    def __repr__(self) -> str:
        return (
            f"ALSModel(factors={self.factors}, iterations={self.iterations}, "
            f"users={len(self.user_index)}, items={len(self.item_index)})"
        )
