"""
Feature Store Client.

Typed async access to user/content features, embeddings, interaction
history, learning paths and experiment assignments. Misses return None or
an empty collection; failures raise FeatureStoreError.

Example:
    >>> from learnrank.feature_store import InMemoryFeatureStore
    >>> store = InMemoryFeatureStore()
    >>> await store.put_user_features(UserFeatures(user_id='u1'))
    >>> await store.get_user_features('u1')
"""

from .base import FeatureStore
from .memory import InMemoryFeatureStore

__all__ = ['FeatureStore', 'InMemoryFeatureStore']
