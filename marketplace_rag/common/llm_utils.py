"""Shared utilities for handling untrusted LLM output."""

from __future__ import annotations

import json
import math
from typing import Any, Optional


def parse_llm_json(raw: str) -> Optional[dict]:
    """Parse a JSON object from an LLM response.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads

    Returns None if nothing parses to a JSON object. Arrays and scalars are
    rejected: callers expect a top-level object.
    """
    if not raw or not raw.strip():
        return None

    text = raw.strip()
    if text.startswith("```"):
        lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        start = raw.find("{")
        end = raw.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                parsed = json.loads(raw[start:end])
            except json.JSONDecodeError:
                return None

    return parsed if isinstance(parsed, dict) else None


def is_finite_number(value: Any) -> bool:
    """True for int/float values that are finite. Booleans are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def clamp_score(value: Any) -> float:
    """Clamp a score into [0, 1]; non-finite or non-numeric values become 0."""
    if not is_finite_number(value):
        return 0.0
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return float(value)
