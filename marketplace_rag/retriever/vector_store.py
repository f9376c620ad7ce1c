"""
Listing Vector Store

Postgres + pgvector access for ad slot listing embeddings.
Nearest-neighbor math runs inside the database; this module only builds
parameterized queries and moves rows in and out.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..common.cancellation import CancellationToken
from ..common.config import DEFAULT_EF_SEARCH, StorageConfig
from .query_processor import SearchFilters

logger = logging.getLogger("marketplace_rag.retriever.vector_store")


NEAREST_NEIGHBOR_SELECT = """
    SELECT
      a.id,
      a.name,
      a.description,
      a.type,
      a.position,
      a.width,
      a.height,
      a."basePrice" AS "basePrice",
      a."cpmFloor" AS "cpmFloor",
      a."isAvailable" AS "isAvailable",
      p.id AS "publisherId",
      p.name AS "publisherName",
      p.website AS "publisherWebsite",
      p.category AS "publisherCategory",
      p."monthlyViews" AS "publisherMonthlyViews",
      p."subscriberCount" AS "publisherSubscriberCount",
      p."isVerified" AS "publisherIsVerified",
      COALESCE(pc.placement_count, 0) AS "placementCount",
      1 - (a.embedding <=> $1) AS similarity
    FROM ad_slots a
    JOIN publishers p ON p.id = a."publisherId"
    LEFT JOIN LATERAL (
      SELECT COUNT(*)::int AS placement_count
      FROM placements pl
      WHERE pl."adSlotId" = a.id
    ) pc ON true
    WHERE a.embedding IS NOT NULL"""

UPSERT_EMBEDDING_SQL = "UPDATE ad_slots SET embedding_text = $1, embedding = $2 WHERE id = $3"

# Transaction-local (is_local = true): never leaks to other queries on the connection.
SET_EF_SEARCH_SQL = "SELECT set_config('hnsw.ef_search', $1, true)"


class VectorQueryBuilder:
    """
    Builds a positional-parameter SQL statement.

    Each appended value gets the next ``$n`` index, so optional predicates
    can be added in any combination without miscounting parameters.
    """

    def __init__(self, base_sql: str, *initial_values: Any):
        self._parts: List[str] = [base_sql]
        self._values: List[Any] = list(initial_values)

    @property
    def next_index(self) -> int:
        return len(self._values) + 1

    def param(self, value: Any) -> str:
        """Register a value and return its placeholder."""
        self._values.append(value)
        return f"${len(self._values)}"

    def where(self, clause: str, value: Any) -> "VectorQueryBuilder":
        """Append ``AND <clause>``; ``{}`` in clause is replaced by the placeholder."""
        self._parts.append(f"\n      AND {clause.format(self.param(value))}")
        return self

    def append(self, sql: str) -> "VectorQueryBuilder":
        self._parts.append(sql)
        return self

    def build(self) -> Tuple[str, List[Any]]:
        return "".join(self._parts), list(self._values)


def build_nearest_neighbor_query(
    query_vector: Any,
    filters: SearchFilters,
    similarity_threshold: float,
    limit: int,
) -> Tuple[str, List[Any]]:
    """
    Nearest-neighbor query ordered by ascending cosine distance.

    Filters are appended in a fixed order (type, category, availability),
    followed by the similarity threshold and the row limit.
    """
    builder = VectorQueryBuilder(NEAREST_NEIGHBOR_SELECT, query_vector)

    if filters.type is not None:
        builder.where("a.type = {}", filters.type)
    if filters.category is not None:
        builder.where("p.category = {}", filters.category)
    if filters.available is not None:
        builder.where('a."isAvailable" = {}', filters.available)

    builder.where("(1 - (a.embedding <=> $1)) >= {}", float(similarity_threshold))
    builder.append("\n    ORDER BY a.embedding <=> $1")
    builder.append(f"\n    LIMIT {builder.param(int(limit))}")
    return builder.build()


def _text_or(value: Optional[str], fallback: str) -> str:
    trimmed = (value or "").strip()
    return trimmed if trimmed else fallback


def _yes_no(value: Any) -> str:
    return "yes" if value else "no"


def build_listing_embedding_text(listing: Mapping[str, Any]) -> str:
    """
    Text a listing vector is computed from.

    Args:
        listing: Ad slot fields plus a nested ``publisher`` mapping
    """
    publisher = listing.get("publisher") or {}
    base_price = listing.get("basePrice")
    return "\n".join([
        f"Ad Slot: {_text_or(listing.get('name'), 'Untitled ad slot')}",
        f"Type: {listing.get('type')}",
        f"Position: {_text_or(listing.get('position'), 'Unknown')}",
        f"Price: ${base_price if base_price is not None else 0}/month",
        f"Available: {_yes_no(listing.get('isAvailable'))}",
        f"Description: {_text_or(listing.get('description'), 'No description provided')}",
        "",
        f"Publisher: {_text_or(publisher.get('name'), 'Unknown publisher')}",
        f"Publisher Category: {_text_or(publisher.get('category'), 'Unknown')}",
        f"Publisher Website: {_text_or(publisher.get('website'), 'Not provided')}",
        f"Publisher Bio: {_text_or(publisher.get('bio'), 'No bio provided')}",
        f"Monthly Views: {publisher.get('monthlyViews') or 0}",
        f"Subscribers: {publisher.get('subscriberCount') or 0}",
        f"Verified: {_yes_no(publisher.get('isVerified'))}",
    ])


class ListingVectorStore:
    """
    pgvector-backed storage for listing embeddings.

    Connections come from an asyncpg pool with the pgvector codec
    registered, so vectors travel as numpy arrays.
    """

    def __init__(self, pool: Any = None, ef_search: int = DEFAULT_EF_SEARCH):
        """
        Initialize store.

        Args:
            pool: asyncpg pool (or any object with an ``acquire()`` context)
            ef_search: HNSW recall/speed tuning value applied per query
        """
        self._pool = pool
        self._ef_search = ef_search

    @classmethod
    async def connect(cls, config: StorageConfig, ef_search: int = DEFAULT_EF_SEARCH) -> "ListingVectorStore":
        """Create a pool from configuration."""
        import asyncpg
        from pgvector.asyncpg import register_vector

        if not config.database_url:
            raise RuntimeError("DATABASE_URL is not configured")

        pool = await asyncpg.create_pool(
            dsn=config.database_url,
            min_size=config.min_pool_size,
            max_size=config.max_pool_size,
            init=register_vector,
        )
        logger.info("Vector store pool ready (max_size=%d)", config.max_pool_size)
        return cls(pool=pool, ef_search=ef_search)

    @property
    def ef_search(self) -> int:
        return self._ef_search

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()

    async def nearest_neighbors(
        self,
        query_vector: Sequence[float],
        filters: SearchFilters,
        similarity_threshold: float,
        limit: int,
        cancel: Optional[CancellationToken] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run the similarity query inside one transaction.

        Returns:
            Row dicts ordered by ascending distance, each with a
            ``similarity`` column
        """
        vector = np.asarray(query_vector, dtype=np.float32)
        sql, values = build_nearest_neighbor_query(vector, filters, similarity_threshold, limit)
        if cancel is not None:
            cancel.raise_if_cancelled()

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(SET_EF_SEARCH_SQL, str(self._ef_search))
                rows = await conn.fetch(sql, *values)

        return [dict(row) for row in rows]

    async def upsert_embedding(
        self,
        listing_id: str,
        embedding_text: str,
        embedding: Sequence[float],
    ) -> None:
        """Write the embedding text and vector for one listing."""
        vector = np.asarray(embedding, dtype=np.float32)
        async with self._pool.acquire() as conn:
            await conn.execute(UPSERT_EMBEDDING_SQL, embedding_text, vector, listing_id)
