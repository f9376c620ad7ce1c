"""
Search Orchestrator

Runs one marketplace search under a single request deadline:

    embedding (cached) -> response cache -> retrieval -> rank | skip -> cache store

The pipeline runs as its own task and races a deadline timer. If the timer
wins, the shared cancellation token is fired, the pipeline task is
cancelled, and the caller gets RequestTimeoutError whatever stage was in
progress. Ranking failures never reach the caller: they degrade to
similarity order with ``generation_failed=True``.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..common.cancellation import CancellationToken
from ..common.config import CacheConfig, RagConfig, SearchConfig
from ..common.embedding_service import EmbeddingService
from ..common.errors import EmbeddingProviderError, RankingError, RequestTimeoutError
from ..common.kv_cache import LruTtlCache
from .query_processor import SearchFilters, normalize_query_for_cache, resolve_top_k
from .reranker import RankedResult, Reranker
from .searcher import CandidateListing, VectorRetriever

logger = logging.getLogger("marketplace_rag.retriever.orchestrator")

PHASE_RETRIEVAL = "retrieval"
PHASE_RANKED = "ranked"


@dataclass(frozen=True)
class SearchResponse:
    """Result of one search; immutable so cached copies can be shared"""
    query: str
    retrieval_count: int
    generation_failed: bool
    phase: str  # "retrieval" | "ranked"
    results: Tuple[RankedResult, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "retrievalCount": self.retrieval_count,
            "generationFailed": self.generation_failed,
            "phase": self.phase,
            "results": [r.to_dict() for r in self.results],
        }


def similarity_order(candidates: Sequence[CandidateListing]) -> List[RankedResult]:
    """Rank by storage order (already similarity-descending), no explanations."""
    return [
        RankedResult(
            listing=candidate,
            rank=index + 1,
            relevance_score=candidate.similarity,
            explanation=None,
        )
        for index, candidate in enumerate(candidates)
    ]


def response_cache_key(
    embedding: Sequence[float],
    filters: SearchFilters,
    top_k: int,
    similarity_threshold: float,
    skip_ranking: bool,
) -> str:
    """SHA-256 over the embedding bytes and the request parameters."""
    digest = hashlib.sha256()
    digest.update(np.asarray(embedding, dtype=np.float64).tobytes())
    digest.update(json.dumps({
        "filters": filters.to_dict(),
        "topK": top_k,
        "threshold": similarity_threshold,
        "skipRanking": skip_ranking,
    }).encode("utf-8"))
    return digest.hexdigest()


def _discard_outcome(task: "asyncio.Task") -> None:
    # Abandoned pipeline: retrieve its exception so asyncio does not log it.
    if not task.cancelled():
        task.exception()


class SearchOrchestrator:
    """
    Sequences the search pipeline and owns the process-wide caches.

    Construct once at startup and share across requests; caches live as
    long as the orchestrator.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        retriever: VectorRetriever,
        reranker: Reranker,
        search_config: Optional[SearchConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        embedding_cache: Optional[LruTtlCache] = None,
        response_cache: Optional[LruTtlCache] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            embedding_service: Query embedding client
            retriever: Vector retrieval stage
            reranker: LLM ranking stage
            search_config: topK bounds, threshold and deadline
            cache_config: Cache bounds used when caches are not injected
            embedding_cache: Normalized query -> embedding
            response_cache: Response cache key -> SearchResponse
        """
        self._embedding = embedding_service
        self._retriever = retriever
        self._reranker = reranker
        self._config = search_config or SearchConfig()

        cache_config = cache_config or CacheConfig()
        self._embedding_cache = embedding_cache if embedding_cache is not None else LruTtlCache(
            cache_config.embedding_max_entries, cache_config.embedding_ttl_ms
        )
        self._response_cache = response_cache if response_cache is not None else LruTtlCache(
            cache_config.response_max_entries, cache_config.response_ttl_ms
        )

    @classmethod
    def from_config(cls, config: RagConfig, retriever: VectorRetriever, llm_client) -> "SearchOrchestrator":
        """Wire the pipeline from configuration."""
        embedding_service = EmbeddingService(
            api_key=config.embedding.openai_api_key or None,
            model=config.embedding.model,
            timeout_ms=config.llm.timeout_ms,
        )
        reranker = Reranker(
            llm_client,
            timeout_ms=config.llm.timeout_ms,
            max_description_chars=config.search.max_description_chars,
        )
        return cls(
            embedding_service=embedding_service,
            retriever=retriever,
            reranker=reranker,
            search_config=config.search,
            cache_config=config.cache,
        )

    @property
    def embedding_cache(self) -> LruTtlCache:
        return self._embedding_cache

    @property
    def response_cache(self) -> LruTtlCache:
        return self._response_cache

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        skip_ranking: bool = False,
    ) -> SearchResponse:
        """
        Search listings for a natural-language query.

        Raises:
            RequestTimeoutError: the global deadline elapsed
            EmbeddingProviderError: no query vector could be produced
            Exception: storage errors propagate unchanged
        """
        deadline_s = self._config.deadline_ms / 1000.0
        cancel = CancellationToken.with_timeout(deadline_s)

        pipeline = asyncio.ensure_future(
            self._run(query, top_k, filters or SearchFilters(), skip_ranking is True, cancel)
        )
        timer = asyncio.ensure_future(asyncio.sleep(cancel.remaining()))

        try:
            done, _ = await asyncio.wait({pipeline, timer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancel.cancel()
            pipeline.cancel()
            timer.cancel()
            raise

        if pipeline in done:
            timer.cancel()
            return pipeline.result()

        logger.warning("Search deadline of %dms elapsed, cancelling in-flight work", self._config.deadline_ms)
        cancel.cancel()
        pipeline.add_done_callback(_discard_outcome)
        pipeline.cancel()
        raise RequestTimeoutError()

    async def _run(
        self,
        query: str,
        raw_top_k: Optional[int],
        filters: SearchFilters,
        skip_ranking: bool,
        cancel: CancellationToken,
    ) -> SearchResponse:
        top_k = resolve_top_k(raw_top_k, self._config.default_top_k, self._config.max_top_k)
        threshold = self._config.similarity_threshold

        embedding = await self._resolve_query_embedding(query, cancel)
        cancel.raise_if_cancelled()

        cache_key = response_cache_key(embedding, filters, top_k, threshold, skip_ranking)
        cached = self._response_cache.get(cache_key)
        if cached is not None:
            logger.debug("Response cache hit for %r", query)
            return cached

        candidates = await self._retriever.retrieve(
            embedding, filters, threshold, top_k, cancel=cancel
        )
        cancel.raise_if_cancelled()

        if not candidates:
            response = SearchResponse(
                query=query,
                retrieval_count=0,
                generation_failed=False,
                phase=PHASE_RANKED,
            )
        elif skip_ranking:
            response = SearchResponse(
                query=query,
                retrieval_count=len(candidates),
                generation_failed=False,
                phase=PHASE_RETRIEVAL,
                results=tuple(similarity_order(candidates)),
            )
        else:
            response = await self._rank(query, candidates, cancel)

        cancel.raise_if_cancelled()
        self._response_cache.set(cache_key, response)
        return response

    async def _resolve_query_embedding(self, query: str, cancel: CancellationToken) -> List[float]:
        normalized = normalize_query_for_cache(query)
        cached = self._embedding_cache.get(normalized)
        if cached is not None:
            logger.debug("Embedding cache hit for %r", normalized)
            return cached

        cancel.raise_if_cancelled()
        embeddings = await self._embedding.embed([query], cancel=cancel)
        if not embeddings:
            raise EmbeddingProviderError()

        embedding = embeddings[0]
        self._embedding_cache.set(normalized, embedding)
        return embedding

    async def _rank(
        self,
        query: str,
        candidates: List[CandidateListing],
        cancel: CancellationToken,
    ) -> SearchResponse:
        try:
            results = await self._reranker.rank(query, candidates, cancel=cancel)
        except RankingError as e:
            logger.warning("Ranking failed, falling back to similarity order: %s", e)
            return SearchResponse(
                query=query,
                retrieval_count=len(candidates),
                generation_failed=True,
                phase=PHASE_RANKED,
                results=tuple(similarity_order(candidates)),
            )

        return SearchResponse(
            query=query,
            retrieval_count=len(candidates),
            generation_failed=False,
            phase=PHASE_RANKED,
            results=tuple(results),
        )
