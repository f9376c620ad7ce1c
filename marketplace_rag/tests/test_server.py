"""
Tests for the HTTP calling layer

The lifespan is not run; module state is patched directly.
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch

from fastapi.testclient import TestClient

from marketplace_rag import server
from marketplace_rag.common.config import EmbeddingConfig, RagConfig, ServerConfig
from marketplace_rag.common.errors import EmbeddingProviderError, RequestTimeoutError
from marketplace_rag.retriever.orchestrator import SearchResponse
from marketplace_rag.retriever.query_processor import QueryProcessor, SearchFilters


def enabled_config():
    return RagConfig(
        embedding=EmbeddingConfig(openai_api_key="sk-test"),
        server=ServerConfig(enabled=True),
    )


@pytest.fixture
def orchestrator():
    orchestrator = Mock()
    orchestrator.search = AsyncMock(return_value=SearchResponse(
        query="tech newsletters",
        retrieval_count=0,
        generation_failed=False,
        phase="ranked",
    ))
    return orchestrator


@pytest.fixture
def client(orchestrator):
    with patch.object(server, "config", enabled_config()), \
            patch.object(server, "orchestrator", orchestrator), \
            patch.object(server, "query_processor", QueryProcessor()):
        yield TestClient(server.app)


class TestStatus:
    def test_rag_status_enabled(self, client):
        assert client.get("/rag-status").json() == {"enabled": True}

    def test_rag_status_without_api_key(self, orchestrator):
        config = RagConfig(server=ServerConfig(enabled=True))
        with patch.object(server, "config", config), patch.object(server, "orchestrator", orchestrator):
            assert TestClient(server.app).get("/rag-status").json() == {"enabled": False}

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["pipeline_ready"] is True


class TestRagSearch:
    def test_success(self, client, orchestrator):
        response = client.post("/rag-search", json={
            "query": "  Tech newsletters ",
            "topK": "7.9",
            "filters": {"type": "NEWSLETTER", "availableOnly": True},
            "skipRanking": True,
        })

        assert response.status_code == 200
        assert response.json() == {
            "query": "tech newsletters",
            "retrievalCount": 0,
            "generationFailed": False,
            "phase": "ranked",
            "results": [],
        }
        orchestrator.search.assert_awaited_once_with(
            "Tech newsletters",
            top_k=7,
            filters=SearchFilters(type="NEWSLETTER", available=True),
            skip_ranking=True,
        )

    def test_disabled_is_not_found(self, orchestrator):
        with patch.object(server, "config", RagConfig()), patch.object(server, "orchestrator", orchestrator):
            response = TestClient(server.app).post("/rag-search", json={"query": "x"})

        assert response.status_code == 404
        orchestrator.search.assert_not_called()

    @pytest.mark.parametrize("body", [
        {},
        {"query": "   "},
        {"query": 42},
        {"query": "ok", "filters": {"type": "BILLBOARD"}},
        {"query": "ok", "filters": "NEWSLETTER"},
    ])
    def test_invalid_request(self, client, orchestrator, body):
        response = client.post("/rag-search", json=body)

        assert response.status_code == 400
        assert "error" in response.json()
        orchestrator.search.assert_not_called()

    @pytest.mark.parametrize("error,status,message", [
        (EmbeddingProviderError(), 503, "AI search temporarily unavailable"),
        (RequestTimeoutError(), 503, "RAG request timed out"),
        (ConnectionError("db down"), 500, "Failed to perform AI marketplace search"),
    ])
    def test_pipeline_errors(self, client, orchestrator, error, status, message):
        orchestrator.search.side_effect = error

        response = client.post("/rag-search", json={"query": "tech newsletters"})

        assert response.status_code == status
        assert response.json() == {"error": message}
