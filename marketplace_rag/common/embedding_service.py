"""
Embedding Service

Turns text into fixed-dimension vectors via the OpenAI embeddings API.
Every provider-level failure surfaces as a single EmbeddingProviderError.
"""

import logging
from typing import Any, List, Optional

import numpy as np

from .cancellation import CancellationToken
from .config import DEFAULT_EMBEDDING_MODEL, DEFAULT_LLM_TIMEOUT_MS
from .errors import (
    EmbeddingProviderError,
    EmbeddingProviderMisconfiguredError,
    RequestTimeoutError,
)

logger = logging.getLogger("marketplace_rag.common.embedding_service")


class EmbeddingService:
    """
    Embedding client for query text.

    No retry at this layer; retry policy for embeddings belongs to the caller.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_EMBEDDING_MODEL,
        timeout_ms: int = DEFAULT_LLM_TIMEOUT_MS,
        client: Any = None,
    ):
        """
        Initialize embedding service.

        Args:
            api_key: OpenAI API key
            model: Embedding model name
            timeout_ms: Upper bound for one provider call
            client: Pre-built async client (tests inject a fake here)
        """
        self._model = model
        self._timeout_s = timeout_ms / 1000.0
        self._client = client

        if self._client is None and api_key:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=api_key)
        elif self._client is None:
            logger.info("OpenAI API key not provided, embedding service unavailable")

    @property
    def is_available(self) -> bool:
        return self._client is not None

    @property
    def model(self) -> str:
        return self._model

    async def embed(
        self,
        texts: List[str],
        cancel: Optional[CancellationToken] = None,
    ) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: Strings to embed
            cancel: Request cancellation token

        Returns:
            One vector per input text, in input order
        """
        if not texts:
            return []

        if not self.is_available:
            raise EmbeddingProviderMisconfiguredError()

        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=texts,
                timeout=self._timeout_s,
            )
            items = sorted(response.data, key=lambda item: item.index)
            matrix = np.asarray([item.embedding for item in items], dtype=np.float64)
        except Exception as e:
            if cancel is not None and cancel.cancelled:
                raise RequestTimeoutError() from e
            logger.error("Embedding generation failed: %s", e)
            raise EmbeddingProviderError() from e

        if matrix.ndim != 2 or matrix.shape[0] != len(texts):
            logger.error(
                "Embedding provider returned %d vectors for %d inputs",
                matrix.shape[0] if matrix.ndim else 0,
                len(texts),
            )
            raise EmbeddingProviderError()

        return matrix.tolist()

    async def embed_single(
        self,
        text: str,
        cancel: Optional[CancellationToken] = None,
    ) -> List[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: if text is empty
        """
        if not text:
            raise ValueError("Cannot embed empty text")

        embeddings = await self.embed([text], cancel=cancel)
        return embeddings[0]
