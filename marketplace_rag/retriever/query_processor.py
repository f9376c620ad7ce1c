"""
Query Processor

Validates and normalizes marketplace search requests before they reach the
pipeline. The normalized form of a query is only ever used as a cache key;
providers always receive the sanitized original text.
"""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..common.config import DEFAULT_TOP_K, MAX_QUERY_LENGTH, MAX_TOP_K
from ..common.errors import InvalidQueryError

_WHITESPACE = re.compile(r"\s+")


class AdSlotType(str, Enum):
    """Ad slot types that can be used as a retrieval filter"""
    DISPLAY = "DISPLAY"
    VIDEO = "VIDEO"
    NATIVE = "NATIVE"
    NEWSLETTER = "NEWSLETTER"
    PODCAST = "PODCAST"


VALID_AD_SLOT_TYPES = tuple(t.value for t in AdSlotType)


@dataclass(frozen=True)
class SearchFilters:
    """Equality filters; None means the field was not supplied"""
    type: Optional[str] = None
    category: Optional[str] = None
    available: Optional[bool] = None

    @property
    def is_empty(self) -> bool:
        return self.type is None and self.category is None and self.available is None

    def to_dict(self) -> Dict[str, Any]:
        """Only the supplied fields, in a fixed key order."""
        data: Dict[str, Any] = {}
        if self.type is not None:
            data["type"] = self.type
        if self.category is not None:
            data["category"] = self.category
        if self.available is not None:
            data["available"] = self.available
        return data


@dataclass
class SearchQuery:
    """A validated search request"""
    text: str
    top_k: Optional[int] = None
    filters: SearchFilters = field(default_factory=SearchFilters)
    skip_ranking: bool = False

    @property
    def normalized(self) -> str:
        return normalize_query_for_cache(self.text)


def sanitize_query(text: str) -> str:
    """Strip ASCII control characters (newline excepted) and trim."""
    return "".join(
        ch for ch in text
        if not ((ord(ch) <= 31 and ch != "\n") or ord(ch) == 127)
    ).strip()


def normalize_query_for_cache(text: str) -> str:
    """Trim, collapse whitespace, lowercase."""
    return _WHITESPACE.sub(" ", text.strip()).lower()


def resolve_top_k(
    raw_top_k: Optional[int],
    default_top_k: int = DEFAULT_TOP_K,
    max_top_k: int = MAX_TOP_K,
) -> int:
    """
    Resolve the effective topK against configured bounds.

    Non-integer or missing values use the default; integers are clamped
    into [1, max_top_k].
    """
    safe_default = default_top_k if isinstance(default_top_k, int) and default_top_k > 0 else DEFAULT_TOP_K
    safe_default = min(max_top_k, safe_default)

    if isinstance(raw_top_k, bool) or not isinstance(raw_top_k, int):
        return safe_default
    return max(1, min(max_top_k, raw_top_k))


def coerce_top_k(raw: Any, max_top_k: int = MAX_TOP_K) -> Optional[int]:
    """
    Coerce a loosely-typed topK from a request body.

    Missing or non-numeric values yield None; numbers are truncated and
    clamped into [1, max_top_k].
    """
    if raw is None or raw == "" or isinstance(raw, bool):
        return None
    try:
        parsed = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return max(1, min(max_top_k, math.trunc(parsed)))


class QueryProcessor:
    """
    Turns raw request values into a SearchQuery.

    Responsibilities:
    1. Sanitize query text and enforce its length bounds
    2. Validate filter values (type, category, availability)
    3. Coerce topK and the skip-ranking flag
    """

    def __init__(self, max_query_length: int = MAX_QUERY_LENGTH, max_top_k: int = MAX_TOP_K):
        self.max_query_length = max_query_length
        self.max_top_k = max_top_k

    def parse(
        self,
        query: Any,
        top_k: Any = None,
        filters: Optional[Mapping[str, Any]] = None,
        skip_ranking: Any = None,
    ) -> SearchQuery:
        """
        Validate a search request.

        Raises:
            InvalidQueryError: on any invalid value
        """
        if not isinstance(query, str):
            raise InvalidQueryError("query is required")

        text = sanitize_query(query)
        if not text:
            raise InvalidQueryError("query is required")
        if len(text) > self.max_query_length:
            raise InvalidQueryError(
                f"query must be between 1 and {self.max_query_length} characters"
            )

        if skip_ranking is not None and not isinstance(skip_ranking, bool):
            raise InvalidQueryError("skipRanking must be a boolean")

        return SearchQuery(
            text=text,
            top_k=coerce_top_k(top_k, self.max_top_k),
            filters=self.parse_filters(filters),
            skip_ranking=skip_ranking is True,
        )

    def parse_filters(self, filters: Optional[Mapping[str, Any]]) -> SearchFilters:
        if filters is None:
            return SearchFilters()
        if not isinstance(filters, Mapping):
            raise InvalidQueryError("filters must be an object")

        slot_type = None
        if "type" in filters:
            value = filters["type"]
            if not isinstance(value, str) or value not in VALID_AD_SLOT_TYPES:
                raise InvalidQueryError("filters.type is invalid")
            slot_type = value

        category = None
        if "category" in filters:
            value = filters["category"]
            if value is not None and not isinstance(value, str):
                raise InvalidQueryError("filters.category must be a string")
            cleaned = value.strip() if isinstance(value, str) else ""
            category = cleaned or None

        available = None
        for key in ("available", "availableOnly"):
            if key in filters:
                value = filters[key]
                if not isinstance(value, bool):
                    raise InvalidQueryError(f"filters.{key} must be a boolean")
                available = value

        return SearchFilters(type=slot_type, category=category, available=available)
