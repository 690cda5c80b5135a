"""
Shared fixtures for the ranking core test suite.

Small deterministic catalogs, interaction logs and trained bundles.
"""

import asyncio
from datetime import datetime, timedelta

import numpy as np
import pytest

from learnrank.config import LearnRankConfig, ALSConfig, InferenceConfig
from learnrank.feature_store import InMemoryFeatureStore
from learnrank.model import train_bundle
from learnrank.types import (
    CompletionStatus,
    ContentFeatures,
    ContentModality,
    UserContentInteraction,
    UserFeatures,
)


SCENARIO_A_QUALITY = {'c1': 0.9, 'c2': 0.5, 'c3': 0.7, 'c4': 0.3, 'c5': 0.8}


@pytest.fixture
def quality_catalog():
    """Five items differing only in quality, no embeddings."""
    return {
        cid: ContentFeatures(content_id=cid, quality_score=q)
        for cid, q in SCENARIO_A_QUALITY.items()
    }


@pytest.fixture
def catalog():
    """Eight items with a prerequisite chain, categories and embeddings."""
    rng = np.random.default_rng(7)
    specs = [
        ('intro', 1, (), 'python', ContentModality.VIDEO),
        ('variables', 1, ('intro',), 'python', ContentModality.TEXT),
        ('loops', 2, ('variables',), 'python', ContentModality.VIDEO),
        ('functions', 2, ('variables',), 'python', ContentModality.INTERACTIVE),
        ('classes', 3, ('functions',), 'python', ContentModality.TEXT),
        ('sql_basics', 1, (), 'databases', ContentModality.VIDEO),
        ('joins', 3, ('sql_basics',), 'databases', ContentModality.QUIZ),
        ('stats', 4, (), 'math', ContentModality.AUDIO),
    ]
    return {
        cid: ContentFeatures(
            content_id=cid,
            embedding=rng.normal(size=8).tolist(),
            difficulty_level=difficulty,
            quality_score=0.5 + 0.05 * i,
            modality=modality,
            prerequisites=frozenset(prereqs),
            topics=[category],
            category=category,
            popularity=0.1 * (i + 1),
        )
        for i, (cid, difficulty, prereqs, category, modality) in enumerate(specs)
    }


@pytest.fixture
def interactions(catalog):
    """Implicit feedback for six users over the catalog."""
    base = datetime(2026, 1, 1)
    rows = []
    content_ids = sorted(catalog)
    for u in range(6):
        for j, cid in enumerate(content_ids):
            if (u + j) % 3 == 0:
                continue
            rows.append(UserContentInteraction(
                user_id=f"u{u}",
                content_id=cid,
                implicit_feedback=float((u + j) % 5 + 1),
                timestamp=base + timedelta(hours=u * 10 + j),
                completion_status=CompletionStatus.COMPLETED if j % 2 == 0 else CompletionStatus.IN_PROGRESS,
                performance_score=0.5 + 0.05 * j if j % 2 == 0 else None,
            ))
    return rows


@pytest.fixture
def small_config():
    return LearnRankConfig(
        als=ALSConfig(factors=4, iterations=3, regularization=0.1, random_state=42),
        inference=InferenceConfig(request_timeout_seconds=5.0),
    )


@pytest.fixture
def trained_bundle(catalog, interactions, small_config):
    embeddings = {cid: f.embedding for cid, f in catalog.items()}
    return train_bundle(
        interactions,
        embeddings,
        config=small_config,
        content_features=catalog,
        version='v_test',
    )


@pytest.fixture
def populated_store(catalog, interactions):
    store = InMemoryFeatureStore()

    async def fill():
        for features in catalog.values():
            await store.put_content_features(features)
        for interaction in interactions:
            await store.record_interaction(interaction)
        await store.put_user_features(UserFeatures(
            user_id='u1',
            completion_rate=0.6,
            topic_affinity={'python': 0.9, 'databases': 0.2},
            preferred_modality=ContentModality.VIDEO,
            engagement_score=0.85,
        ))
        await store.put_user_embedding('u1', np.asarray(catalog['loops'].embedding))

    asyncio.run(fill())
    return store
