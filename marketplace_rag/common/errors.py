"""
Error taxonomy for the search pipeline.

Only RankingError is recovered internally (by the orchestrator). Everything
else reaches the caller, which maps it to a user-facing message.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error classification types."""
    PROVIDER_MISCONFIGURED = "provider_misconfigured"
    EMBEDDING_FAILURE = "embedding_failure"
    RANKING_FAILURE = "ranking_failure"
    REQUEST_TIMEOUT = "request_timeout"
    INVALID_QUERY = "invalid_query"


class SearchError(Exception):
    """Base exception for search pipeline errors."""

    error_type = ErrorType.RANKING_FAILURE
    default_message = "Search failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.default_message)
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error_type": self.error_type.value,
            "message": str(self),
            "details": self.details,
        }


class ProviderMisconfiguredError(SearchError):
    """Credentials for an external provider are missing."""
    error_type = ErrorType.PROVIDER_MISCONFIGURED
    default_message = "Provider credentials are not configured"


class EmbeddingProviderError(SearchError):
    """The embedding provider could not produce a vector."""
    error_type = ErrorType.EMBEDDING_FAILURE
    default_message = "AI search temporarily unavailable"


class EmbeddingProviderMisconfiguredError(EmbeddingProviderError, ProviderMisconfiguredError):
    """Missing embedding credentials. Callers see it as an EmbeddingProviderError."""
    error_type = ErrorType.PROVIDER_MISCONFIGURED
    default_message = "AI search temporarily unavailable"


class RankingError(SearchError):
    """LLM ranking failed after its retry. Recovered by the orchestrator."""
    error_type = ErrorType.RANKING_FAILURE
    default_message = "LLM ranking failed"


class RequestTimeoutError(SearchError):
    """The global request deadline elapsed."""
    error_type = ErrorType.REQUEST_TIMEOUT
    default_message = "RAG request timed out"


class InvalidQueryError(SearchError, ValueError):
    """Query text or filters failed validation."""
    error_type = ErrorType.INVALID_QUERY
    default_message = "query is required"
