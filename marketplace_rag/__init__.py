"""
Marketplace RAG

Semantic search over marketplace ad slot listings.

Philosophy:
- Never return a listing that retrieval did not produce
- Ranking is optional: an LLM failure degrades to similarity order
- One deadline per request, shared by every provider call

Usage:
    from marketplace_rag.common import load_config, EmbeddingService, LruTtlCache
    from marketplace_rag.retriever import SearchOrchestrator, SearchQuery
"""

__version__ = "0.1.0"
