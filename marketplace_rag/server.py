"""
Marketplace RAG Server

FastAPI calling layer for the semantic search pipeline.

Endpoints:
- GET /health: Health check
- GET /rag-status: Whether AI search is enabled
- POST /rag-search: Semantic search over marketplace listings

Error mapping:
- Invalid request -> 400
- Embedding failure or request timeout -> 503 (try again)
- Storage or unexpected failure -> 500
Ranking failures never surface here; they arrive as generationFailed=true.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .common.config import RagConfig, load_config
from .common.errors import EmbeddingProviderError, InvalidQueryError, RequestTimeoutError
from .common.llm_client import LLMClient
from .retriever.orchestrator import SearchOrchestrator
from .retriever.query_processor import QueryProcessor
from .retriever.searcher import VectorRetriever
from .retriever.vector_store import ListingVectorStore

load_dotenv()

logger = logging.getLogger("marketplace_rag.server")


# Global state
config: Optional[RagConfig] = None
orchestrator: Optional[SearchOrchestrator] = None
vector_store: Optional[ListingVectorStore] = None
query_processor: QueryProcessor = QueryProcessor()


def setup_logging(level: str = "INFO") -> None:
    """Console logging for the package loggers"""
    root = logging.getLogger("marketplace_rag")
    root.handlers.clear()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root.addHandler(handler)


def is_rag_enabled() -> bool:
    return bool(config and config.server.enabled and config.embedding.openai_api_key)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, orchestrator, vector_store, query_processor

    config = load_config()
    setup_logging(config.server.log_level)
    logger.info("Starting up (enabled: %s)", is_rag_enabled())

    query_processor = QueryProcessor(
        max_query_length=config.search.max_query_length,
        max_top_k=config.search.max_top_k,
    )

    if is_rag_enabled():
        vector_store = await ListingVectorStore.connect(config.storage, ef_search=config.search.ef_search)
        llm_client = LLMClient(
            provider=config.llm.provider,
            model=config.llm.resolved_model,
            openai_api_key=config.llm.openai_api_key or None,
            anthropic_api_key=config.llm.anthropic_api_key or None,
        )
        if not llm_client.is_available:
            logger.warning("LLM ranking unavailable, results will use similarity order")
        orchestrator = SearchOrchestrator.from_config(config, VectorRetriever(vector_store), llm_client)
        logger.info(
            "Search pipeline ready (embedding=%s, llm=%s/%s)",
            config.embedding.model, config.llm.provider, config.llm.resolved_model,
        )

    yield

    if vector_store is not None:
        await vector_store.close()
    logger.info("Shut down")


app = FastAPI(
    title="Marketplace RAG",
    description="Semantic search over marketplace ad slot listings",
    lifespan=lifespan,
)


class RagSearchRequest(BaseModel):
    """Loosely typed body; values are validated by QueryProcessor"""
    query: Any = None
    topK: Any = None
    filters: Any = None
    skipRanking: Any = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "enabled": is_rag_enabled(),
        "pipeline_ready": orchestrator is not None,
    }


@app.get("/rag-status")
async def rag_status():
    return {"enabled": is_rag_enabled()}


@app.post("/rag-search")
async def rag_search(body: RagSearchRequest):
    """AI-assisted marketplace search"""
    if not is_rag_enabled() or orchestrator is None:
        return _error(404, "Not found")

    try:
        parsed = query_processor.parse(
            body.query,
            top_k=body.topK,
            filters=body.filters,
            skip_ranking=body.skipRanking,
        )
    except InvalidQueryError as e:
        return _error(400, str(e))

    try:
        response = await orchestrator.search(
            parsed.text,
            top_k=parsed.top_k,
            filters=parsed.filters,
            skip_ranking=parsed.skip_ranking,
        )
    except EmbeddingProviderError:
        return _error(503, "AI search temporarily unavailable")
    except RequestTimeoutError:
        return _error(503, "RAG request timed out")
    except Exception as e:
        logger.error("Error performing RAG marketplace search: %s", e, exc_info=True)
        return _error(500, "Failed to perform AI marketplace search")

    return response.to_dict()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the search server"""
    import uvicorn

    port = load_config().server.port
    logger.info("Starting server on port %d", port)
    uvicorn.run(
        "marketplace_rag.server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
