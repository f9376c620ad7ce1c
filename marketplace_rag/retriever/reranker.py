"""
Reranker

LLM-based ranking of retrieved listings with grounding validation.

Key principle: the LLM may only reorder and explain what retrieval found.
- Items naming an id outside the candidate set are dropped
- Duplicate ids keep their first occurrence after sorting by LLM rank
- Scores are clamped into [0, 1] and ranks re-numbered 1..N
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..common.cancellation import CancellationToken
from ..common.config import DEFAULT_LLM_TIMEOUT_MS, MAX_LISTING_DESCRIPTION_CHARS
from ..common.errors import ProviderMisconfiguredError, RankingError, RequestTimeoutError
from ..common.llm_client import LLMClient
from ..common.llm_utils import clamp_score, is_finite_number, parse_llm_json
from .searcher import CandidateListing

logger = logging.getLogger("marketplace_rag.retriever.reranker")

MAX_RETRIES = 1
RANKING_TEMPERATURE = 0.2
RANKING_MAX_TOKENS = 500


RANKING_SYSTEM_PROMPT = "\n".join([
    "You are a marketplace search assistant for a sponsorship marketplace.",
    "Given a user's search query and a list of retrieved ad slot listings,",
    "rank them by relevance and explain why each is a good match.",
    "",
    "Rules:",
    "- ONLY rank listings from the provided list. Never invent data.",
    "- ONLY reference information present in the provided listings.",
    "- Return valid JSON matching the schema below.",
    "- If no listings are relevant, return an empty results array.",
    "- Keep explanations to 1-2 sentences.",
    "- Each result adSlotId must match a listing id exactly.",
])

RESPONSE_SCHEMA = "\n".join([
    "{",
    '  "results": [',
    "    {",
    '      "adSlotId": "string",',
    '      "rank": number,',
    '      "relevanceScore": number,',
    '      "explanation": "string"',
    "    }",
    "  ]",
    "}",
])


@dataclass
class RankingItem:
    """One validated item from the LLM payload (before grounding checks)"""
    listing_id: str
    rank: int
    relevance_score: float
    explanation: str


@dataclass
class RankedResult:
    """A listing in its final position"""
    listing: CandidateListing
    rank: int  # 1..N, contiguous
    relevance_score: float  # [0, 1]
    explanation: Optional[str] = None

    @property
    def listing_ref(self) -> str:
        return self.listing.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adSlot": self.listing.to_dict(),
            "rank": self.rank,
            "relevanceScore": self.relevance_score,
            "explanation": self.explanation,
        }


def build_ranking_prompt(
    query: str,
    candidates: Sequence[CandidateListing],
    max_description_chars: int = MAX_LISTING_DESCRIPTION_CHARS,
) -> str:
    """User turn: the query plus stripped candidate attributes as JSON."""
    listings = [c.to_prompt_dict(max_description_chars) for c in candidates]
    return "\n".join([
        f'User query: "{query}"',
        "",
        "Retrieved listings:",
        json.dumps(listings, ensure_ascii=False),
        "",
        "Return JSON:",
        RESPONSE_SCHEMA,
    ])


def parse_ranking_payload(payload: Any) -> List[RankingItem]:
    """
    Validate the LLM payload field by field.

    Raises:
        ValueError: if the payload is not an object with a ``results`` list

    Invalid items are dropped individually.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise ValueError("LLM payload has no results array")

    items: List[RankingItem] = []
    for raw in payload["results"]:
        if not isinstance(raw, dict):
            continue

        listing_id = raw.get("adSlotId", raw.get("id"))
        rank = raw.get("rank")
        score = raw.get("relevanceScore", raw.get("score"))
        explanation = raw.get("explanation")

        if not isinstance(listing_id, str) or not listing_id.strip():
            continue
        if not is_finite_number(rank) or not is_finite_number(score):
            continue
        if not isinstance(explanation, str) or not explanation.strip():
            continue

        items.append(RankingItem(
            listing_id=listing_id.strip(),
            rank=max(1, math.floor(rank + 0.5)),
            relevance_score=float(score),
            explanation=explanation.strip(),
        ))

    dropped = len(payload["results"]) - len(items)
    if dropped:
        logger.warning("Dropped %d malformed ranking item(s)", dropped)
    return items


def filter_known(items: Sequence[RankingItem], candidate_ids: set) -> List[RankingItem]:
    """Drop items whose id was not produced by retrieval."""
    known = [item for item in items if item.listing_id in candidate_ids]
    if len(known) != len(items):
        logger.warning("Dropped %d ranking item(s) with unknown ids", len(items) - len(known))
    return known


def sort_by_rank(items: Sequence[RankingItem]) -> List[RankingItem]:
    """Stable sort on the LLM rank; ties keep emission order."""
    return sorted(items, key=lambda item: item.rank)


def dedupe(items: Sequence[RankingItem]) -> List[RankingItem]:
    """Keep the first occurrence of each id."""
    seen = set()
    unique = []
    for item in items:
        if item.listing_id in seen:
            continue
        seen.add(item.listing_id)
        unique.append(item)
    return unique


def renumber(
    items: Sequence[RankingItem],
    candidates_by_id: Dict[str, CandidateListing],
) -> List[RankedResult]:
    """Final results with contiguous ranks and clamped scores."""
    return [
        RankedResult(
            listing=candidates_by_id[item.listing_id],
            rank=index + 1,
            relevance_score=clamp_score(item.relevance_score),
            explanation=item.explanation,
        )
        for index, item in enumerate(items)
    ]


def ground_rankings(
    items: Sequence[RankingItem],
    candidates: Sequence[CandidateListing],
) -> List[RankedResult]:
    """filter -> sort -> dedupe -> renumber"""
    candidates_by_id = {c.id: c for c in candidates}
    known = filter_known(items, set(candidates_by_id))
    return renumber(dedupe(sort_by_rank(known)), candidates_by_id)


class Reranker:
    """
    Ranks retrieved candidates with an LLM.

    The whole call is retried once. A failure after the retry is raised as
    RankingError for the orchestrator to recover from; a failure caused by
    the request deadline is raised as RequestTimeoutError instead.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        timeout_ms: int = DEFAULT_LLM_TIMEOUT_MS,
        max_description_chars: int = MAX_LISTING_DESCRIPTION_CHARS,
    ):
        """
        Initialize reranker.

        Args:
            llm_client: Provider client used for JSON completions
            timeout_ms: Per-attempt response deadline
            max_description_chars: Description length sent to the LLM
        """
        self._llm = llm_client
        self._timeout_s = timeout_ms / 1000.0
        self._max_description_chars = max_description_chars

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    async def rank(
        self,
        query: str,
        candidates: Sequence[CandidateListing],
        cancel: Optional[CancellationToken] = None,
    ) -> List[RankedResult]:
        """
        Rank candidates for a query.

        Args:
            query: Original (sanitized) query text
            candidates: Non-empty retrieval output

        Returns:
            Grounded, re-numbered results

        Raises:
            RankingError: LLM unavailable or failed twice
            RequestTimeoutError: the request deadline fired during ranking
        """
        if not candidates:
            raise ValueError("rank() requires at least one candidate")

        prompt = build_ranking_prompt(query, candidates, self._max_description_chars)
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                items = await self._request(prompt)
            except ProviderMisconfiguredError as e:
                raise RankingError(str(e)) from e
            except Exception as e:
                if cancel is not None and cancel.cancelled:
                    raise RequestTimeoutError() from e
                last_error = e
                logger.warning("Ranking attempt %d failed: %s", attempt + 1, e)
                continue
            return ground_rankings(items, candidates)

        raise RankingError(f"LLM ranking failed: {last_error}") from last_error

    async def _request(self, prompt: str) -> List[RankingItem]:
        raw = await asyncio.wait_for(
            self._llm.complete_json(
                prompt,
                system=RANKING_SYSTEM_PROMPT,
                max_tokens=RANKING_MAX_TOKENS,
                temperature=RANKING_TEMPERATURE,
                timeout=self._timeout_s,
            ),
            timeout=self._timeout_s,
        )
        payload = parse_llm_json(raw)
        if payload is None:
            raise ValueError("LLM response is not a JSON object")
        return parse_ranking_payload(payload)
