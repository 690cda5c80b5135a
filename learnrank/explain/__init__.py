"""
Explainability Module.

Example:
    >>> from learnrank.explain import ExplanationGenerator
    >>> generator = ExplanationGenerator(content_model=bundle.content, ranker=bundle.ranker)
"""

from .explanations import (
    ExplanationGenerator,
    TransparencyReporter,
    explain_behaviour,
    counterfactuals,
    PRIMARY_REASONS,
    COLD_START_REASON,
)

__all__ = [
    'ExplanationGenerator',
    'TransparencyReporter',
    'explain_behaviour',
    'counterfactuals',
    'PRIMARY_REASONS',
    'COLD_START_REASON',
]
