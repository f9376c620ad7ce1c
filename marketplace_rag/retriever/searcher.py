"""
Searcher

Retrieves candidate ad slot listings by vector similarity.
Storage errors are not caught here: a failed retrieval fails the request.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..common.cancellation import CancellationToken
from ..common.config import MAX_LISTING_DESCRIPTION_CHARS, MAX_TOP_K
from ..common.llm_utils import clamp_score
from .query_processor import SearchFilters
from .vector_store import ListingVectorStore

logger = logging.getLogger("marketplace_rag.retriever.searcher")

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ListingPublisher:
    """Public attributes of the publisher owning a listing"""
    id: str
    name: str
    website: Optional[str] = None
    category: Optional[str] = None
    monthly_views: Optional[int] = None
    subscriber_count: Optional[int] = None
    is_verified: bool = False


@dataclass
class CandidateListing:
    """A listing returned by vector retrieval"""
    id: str
    name: str
    type: str
    similarity: float  # 1 - cosine distance, clamped to [0, 1]
    publisher: ListingPublisher
    description: Optional[str] = None
    position: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    base_price: float = 0.0
    cpm_floor: Optional[float] = None
    is_available: bool = True
    placement_count: int = 0

    def to_prompt_dict(self, max_description_chars: int = MAX_LISTING_DESCRIPTION_CHARS) -> Dict[str, Any]:
        """Stripped attributes sent to the ranking LLM"""
        return {
            "id": self.id,
            "name": self.name,
            "category": self.publisher.category,
            "price": self.base_price,
            "isVerified": self.publisher.is_verified,
            "description": shorten_description(self.description, max_description_chars),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Public listing shape returned to callers"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "position": self.position,
            "width": self.width,
            "height": self.height,
            "basePrice": self.base_price,
            "cpmFloor": self.cpm_floor,
            "isAvailable": self.is_available,
            "publisher": {
                "id": self.publisher.id,
                "name": self.publisher.name,
                "website": self.publisher.website,
                "category": self.publisher.category,
                "monthlyViews": self.publisher.monthly_views,
                "subscriberCount": self.publisher.subscriber_count,
                "isVerified": self.publisher.is_verified,
            },
            "_count": {"placements": self.placement_count},
        }


def to_number(value: Any) -> Optional[float]:
    """Numeric or numeric-string storage value as float; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def shorten_description(value: Optional[str], max_chars: int = MAX_LISTING_DESCRIPTION_CHARS) -> Optional[str]:
    """Collapse whitespace and truncate with an ellipsis to ``max_chars``."""
    if not value:
        return None
    trimmed = _WHITESPACE.sub(" ", value.strip())
    if not trimmed:
        return None
    if len(trimmed) <= max_chars:
        return trimmed
    return f"{trimmed[:max_chars - 1]}…"


def row_to_candidate(row: Mapping[str, Any]) -> CandidateListing:
    """Convert a storage row to a CandidateListing"""
    placement_count = to_number(row.get("placementCount"))
    return CandidateListing(
        id=str(row["id"]),
        name=row.get("name") or "",
        type=row.get("type") or "",
        similarity=clamp_score(to_number(row.get("similarity"))),
        description=row.get("description"),
        position=row.get("position"),
        width=row.get("width"),
        height=row.get("height"),
        base_price=to_number(row.get("basePrice")) or 0.0,
        cpm_floor=to_number(row.get("cpmFloor")),
        is_available=bool(row.get("isAvailable")),
        placement_count=int(placement_count) if placement_count is not None else 0,
        publisher=ListingPublisher(
            id=str(row.get("publisherId") or ""),
            name=row.get("publisherName") or "",
            website=row.get("publisherWebsite"),
            category=row.get("publisherCategory"),
            monthly_views=row.get("publisherMonthlyViews"),
            subscriber_count=row.get("publisherSubscriberCount"),
            is_verified=bool(row.get("publisherIsVerified")),
        ),
    )


class VectorRetriever:
    """
    Similarity retrieval over listing embeddings.

    Delegates nearest-neighbor computation to the vector store and shapes
    the rows into CandidateListing objects, preserving storage order
    (similarity descending).
    """

    def __init__(self, store: ListingVectorStore):
        self._store = store

    async def retrieve(
        self,
        query_embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        similarity_threshold: float = 0.0,
        top_k: int = 5,
        cancel: Optional[CancellationToken] = None,
    ) -> List[CandidateListing]:
        """
        Retrieve listings at or above the similarity threshold.

        Args:
            query_embedding: Query vector
            filters: Equality filters (only supplied fields apply)
            similarity_threshold: Minimum similarity in [0, 1]
            top_k: Row cap in [1, 20]

        Returns:
            Candidates ordered by descending similarity
        """
        if not 0 <= similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be between 0 and 1")
        if not 1 <= top_k <= MAX_TOP_K:
            raise ValueError(f"top_k must be between 1 and {MAX_TOP_K}")

        rows = await self._store.nearest_neighbors(
            query_embedding,
            filters or SearchFilters(),
            similarity_threshold,
            top_k,
            cancel=cancel,
        )
        candidates = [row_to_candidate(row) for row in rows[:top_k]]
        logger.debug("Retrieved %d candidates (top_k=%d)", len(candidates), top_k)
        return candidates
