"""
Error taxonomy for the ranking core.

Every error carries an ``error_class`` that tells the caller what to do:
- ``invalid_request``: fix the request or configuration
- ``retry``: upstream failure or timeout, try again
- ``no_data``: nothing to train on yet

Cold start is not an error: missing features degrade to neutral scores.
"""

from typing import Optional


class LearnRankError(Exception):
    """Base class for ranking core errors."""

    error_class = 'internal'
    retryable = False

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            'error': self.__class__.__name__,
            'error_class': self.error_class,
            'retryable': self.retryable,
            'message': self.message,
            'details': self.details,
        }


class ValidationError(LearnRankError, ValueError):
    """Request rejected before any model call."""

    error_class = 'invalid_request'


class ConfigurationError(ValidationError):
    """Invalid ranking weights or experiment configuration."""


class InsufficientDataError(LearnRankError, ValueError):
    """Training attempted without interactions, embeddings or examples."""

    error_class = 'no_data'


class UpstreamError(LearnRankError):
    """A collaborator (feature store, executor) failed; the request may be retried."""

    error_class = 'retry'
    retryable = True


class FeatureStoreError(UpstreamError):
    """Feature store read or write failed."""


class RequestTimeoutError(UpstreamError):
    """The request pipeline exceeded its latency budget."""

    def __init__(self, message: str, timeout_seconds: float, details: Optional[dict] = None):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds
