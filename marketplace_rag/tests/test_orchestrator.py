"""
Tests for the SearchOrchestrator

Exercises the full pipeline with fake providers: grounding, fallback on
ranking failure, the skip-ranking path, both caches, and the request
deadline.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, Mock

from marketplace_rag.common.config import SearchConfig
from marketplace_rag.common.errors import EmbeddingProviderError, RequestTimeoutError
from marketplace_rag.common.kv_cache import LruTtlCache
from marketplace_rag.retriever.orchestrator import (
    PHASE_RANKED,
    PHASE_RETRIEVAL,
    SearchOrchestrator,
    response_cache_key,
    similarity_order,
)
from marketplace_rag.retriever.query_processor import SearchFilters
from marketplace_rag.retriever.reranker import Reranker
from marketplace_rag.retriever.searcher import row_to_candidate


QUERY_VECTOR = [0.1, 0.2, 0.3]


def make_candidate(listing_id, similarity):
    return row_to_candidate({
        "id": listing_id,
        "name": f"Listing {listing_id}",
        "description": "Sponsor slot",
        "type": "NEWSLETTER",
        "basePrice": 250,
        "isAvailable": True,
        "publisherId": "pub-1",
        "publisherName": "Tech Weekly",
        "publisherCategory": "Technology",
        "publisherIsVerified": False,
        "placementCount": 0,
        "similarity": similarity,
    })


async def hang(*args, **kwargs):
    await asyncio.Event().wait()


def build_orchestrator(candidates, llm_responses=(), search_config=None, llm_side_effect=None):
    embedding = Mock()
    embedding.embed = AsyncMock(return_value=[QUERY_VECTOR])

    retriever = Mock()
    retriever.retrieve = AsyncMock(return_value=list(candidates))

    llm = Mock()
    llm.is_available = True
    llm.complete_json = AsyncMock(side_effect=llm_side_effect or list(llm_responses))

    orchestrator = SearchOrchestrator(
        embedding_service=embedding,
        retriever=retriever,
        reranker=Reranker(llm),
        search_config=search_config or SearchConfig(),
        embedding_cache=LruTtlCache(10, 0),
        response_cache=LruTtlCache(10, 0),
    )
    return orchestrator, embedding, retriever, llm


def ranking_payload(*items):
    return json.dumps({"results": [
        {"adSlotId": listing_id, "rank": rank, "relevanceScore": score, "explanation": explanation}
        for listing_id, rank, score, explanation in items
    ]})


class TestHelpers:
    def test_similarity_order(self):
        candidates = [make_candidate("a", 0.9), make_candidate("b", 0.4)]
        results = similarity_order(candidates)

        assert [(r.listing_ref, r.rank, r.relevance_score, r.explanation) for r in results] == [
            ("a", 1, 0.9, None),
            ("b", 2, 0.4, None),
        ]

    def test_cache_key_distinguishes_parameters(self):
        base = response_cache_key(QUERY_VECTOR, SearchFilters(), 5, 0.3, False)

        assert base == response_cache_key(QUERY_VECTOR, SearchFilters(), 5, 0.3, False)
        assert base != response_cache_key(QUERY_VECTOR, SearchFilters(), 5, 0.3, True)
        assert base != response_cache_key(QUERY_VECTOR, SearchFilters(), 6, 0.3, False)
        assert base != response_cache_key(QUERY_VECTOR, SearchFilters(type="VIDEO"), 5, 0.3, False)
        assert base != response_cache_key([0.1, 0.2, 0.31], SearchFilters(), 5, 0.3, False)


class TestSearch:
    @pytest.mark.asyncio
    async def test_hallucinated_listing_is_dropped(self):
        orchestrator, _, retriever, _ = build_orchestrator(
            [make_candidate("slot-1", 0.82)],
            [ranking_payload(
                ("unknown-slot", 1, 0.9, "Invalid id"),
                ("slot-1", 2, 0.78, "Strong category and audience fit."),
            )],
        )
        filters = SearchFilters(type="NEWSLETTER")

        response = await orchestrator.search("newsletter sponsorships", filters=filters)

        assert response.phase == PHASE_RANKED
        assert response.generation_failed is False
        assert response.retrieval_count == 1
        assert len(response.results) == 1
        assert response.results[0].listing_ref == "slot-1"
        assert response.results[0].rank == 1
        assert response.results[0].relevance_score == 0.78
        assert retriever.retrieve.call_args.args[1] == filters

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_similarity(self):
        orchestrator, _, _, llm = build_orchestrator(
            [make_candidate("slot-1", 0.82)],
            llm_side_effect=RuntimeError("provider down"),
        )

        response = await orchestrator.search("newsletter sponsorships")

        assert llm.complete_json.await_count == 2
        assert response.generation_failed is True
        assert response.phase == PHASE_RANKED
        assert response.results[0].relevance_score == 0.82
        assert response.results[0].explanation is None

    @pytest.mark.asyncio
    async def test_skip_ranking_never_calls_llm(self):
        orchestrator, _, _, llm = build_orchestrator(
            [make_candidate("a", 0.9), make_candidate("b", 0.6)],
        )

        response = await orchestrator.search("podcast ads", skip_ranking=True)

        llm.complete_json.assert_not_called()
        assert response.phase == PHASE_RETRIEVAL
        assert [r.rank for r in response.results] == [1, 2]
        assert response.to_dict()["results"][0]["explanation"] is None

    @pytest.mark.asyncio
    async def test_empty_retrieval_skips_llm(self):
        orchestrator, _, _, llm = build_orchestrator([])

        response = await orchestrator.search("nothing matches")

        llm.complete_json.assert_not_called()
        assert response.to_dict() == {
            "query": "nothing matches",
            "retrievalCount": 0,
            "generationFailed": False,
            "phase": "ranked",
            "results": [],
        }

    @pytest.mark.asyncio
    async def test_results_never_exceed_retrieval_count(self):
        orchestrator, _, _, _ = build_orchestrator(
            [make_candidate("a", 0.9), make_candidate("b", 0.6)],
            [ranking_payload(
                ("a", 1, 0.9, "x"),
                ("a", 2, 0.8, "dup"),
                ("b", 3, 0.7, "y"),
                ("c", 4, 0.6, "ghost"),
            )],
        )

        response = await orchestrator.search("query")

        assert len(response.results) <= response.retrieval_count
        assert [r.rank for r in response.results] == [1, 2]

    @pytest.mark.asyncio
    async def test_top_k_resolution(self):
        orchestrator, _, retriever, _ = build_orchestrator([], search_config=SearchConfig(default_top_k=7))

        await orchestrator.search("q one")
        await orchestrator.search("q two", top_k=99)

        assert retriever.retrieve.call_args_list[0].args[3] == 7
        assert retriever.retrieve.call_args_list[1].args[3] == 20

    @pytest.mark.asyncio
    async def test_storage_error_propagates(self):
        orchestrator, _, retriever, _ = build_orchestrator([])
        retriever.retrieve.side_effect = ConnectionError("db down")

        with pytest.raises(ConnectionError):
            await orchestrator.search("query")

    @pytest.mark.asyncio
    async def test_embedding_error_propagates(self):
        orchestrator, embedding, _, _ = build_orchestrator([])
        embedding.embed.side_effect = EmbeddingProviderError()

        with pytest.raises(EmbeddingProviderError):
            await orchestrator.search("query")


class TestCaching:
    @pytest.mark.asyncio
    async def test_query_variants_share_embedding(self):
        orchestrator, embedding, _, _ = build_orchestrator([])

        await orchestrator.search("Tech Newsletters")
        await orchestrator.search("  tech   newsletters ")

        assert embedding.embed.await_count == 1
        assert embedding.embed.call_args.args[0] == ["Tech Newsletters"]

    @pytest.mark.asyncio
    async def test_identical_request_served_from_response_cache(self):
        orchestrator, embedding, retriever, llm = build_orchestrator(
            [make_candidate("slot-1", 0.82)],
            [ranking_payload(("slot-1", 1, 0.7, "Fits."))],
        )

        first = await orchestrator.search("newsletter sponsorships")
        second = await orchestrator.search("newsletter sponsorships")

        assert second is first
        assert embedding.embed.await_count == 1
        assert retriever.retrieve.await_count == 1
        assert llm.complete_json.await_count == 1

    @pytest.mark.asyncio
    async def test_skip_ranking_is_part_of_the_key(self):
        orchestrator, _, retriever, _ = build_orchestrator(
            [make_candidate("slot-1", 0.82)],
            [ranking_payload(("slot-1", 1, 0.7, "Fits."))],
        )

        ranked = await orchestrator.search("q")
        unranked = await orchestrator.search("q", skip_ranking=True)

        assert ranked.phase == PHASE_RANKED
        assert unranked.phase == PHASE_RETRIEVAL
        assert retriever.retrieve.await_count == 2


class TestDeadline:
    @pytest.mark.asyncio
    async def test_hanging_embedding_times_out_at_deadline(self):
        orchestrator, embedding, _, _ = build_orchestrator([], search_config=SearchConfig(deadline_ms=50))
        embedding.embed.side_effect = hang
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(RequestTimeoutError):
            await orchestrator.search("slow query")

        assert loop.time() - started >= 0.045

    @pytest.mark.asyncio
    async def test_deadline_during_ranking_is_a_timeout_not_a_fallback(self):
        orchestrator, _, _, _ = build_orchestrator(
            [make_candidate("slot-1", 0.82)],
            search_config=SearchConfig(deadline_ms=50),
            llm_side_effect=hang,
        )

        with pytest.raises(RequestTimeoutError):
            await orchestrator.search("slow ranking")

        assert len(orchestrator.response_cache) == 0

    @pytest.mark.asyncio
    async def test_fast_pipeline_is_unaffected(self):
        orchestrator, _, _, _ = build_orchestrator([], search_config=SearchConfig(deadline_ms=1000))

        response = await orchestrator.search("quick")

        assert response.retrieval_count == 0
