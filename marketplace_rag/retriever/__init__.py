"""
Retriever - Marketplace Semantic Search

Ranks marketplace ad slot listings against a natural-language query.

Key Components:
- QueryProcessor: Validates and normalizes search requests
- VectorRetriever: Similarity retrieval via the listing vector store
- Reranker: LLM ranking with grounding validation
- SearchOrchestrator: Caches, deadline and stage sequencing

Pipeline:
1. Embed the query (embedding cache keyed by normalized text)
2. Check the response cache
3. Retrieve candidates above the similarity threshold
4. Rank with the LLM, or fall back to similarity order
5. Cache and return the response
"""

from .query_processor import QueryProcessor, SearchFilters, SearchQuery
from .vector_store import ListingVectorStore, VectorQueryBuilder
from .searcher import CandidateListing, VectorRetriever
from .reranker import RankedResult, Reranker
from .orchestrator import SearchOrchestrator, SearchResponse

__all__ = [
    "QueryProcessor",
    "SearchFilters",
    "SearchQuery",
    "ListingVectorStore",
    "VectorQueryBuilder",
    "CandidateListing",
    "VectorRetriever",
    "RankedResult",
    "Reranker",
    "SearchOrchestrator",
    "SearchResponse",
]
