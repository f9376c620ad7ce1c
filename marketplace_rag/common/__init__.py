"""
Marketplace RAG Common Module

Shared infrastructure for the search pipeline.
"""

from .config import RagConfig, load_config
from .cancellation import CancellationToken
from .embedding_service import EmbeddingService
from .errors import (
    EmbeddingProviderError,
    ProviderMisconfiguredError,
    RankingError,
    RequestTimeoutError,
    SearchError,
)
from .kv_cache import LruTtlCache
from .llm_client import LLMClient

__all__ = [
    "RagConfig",
    "load_config",
    "CancellationToken",
    "EmbeddingService",
    "EmbeddingProviderError",
    "ProviderMisconfiguredError",
    "RankingError",
    "RequestTimeoutError",
    "SearchError",
    "LruTtlCache",
    "LLMClient",
]
