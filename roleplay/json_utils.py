from __future__ import annotations

import json
import re
from typing import Any, Dict

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", flags=re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def _candidates(text: str):
    """
    Yield progressively more aggressive repairs of a model reply.
    """
    current = text.strip()
    yield current

    fence = _FENCE.search(current)
    if fence:
        current = fence.group(1).strip()
        yield current

    start, end = current.find("{"), current.rfind("}")
    if start != -1 and end > start:
        current = current[start : end + 1]
        yield current

    current = current.translate(_SMART_QUOTES)
    yield current

    yield _TRAILING_COMMA.sub(r"\1", current)


def coerce_json_object(text: str) -> Dict[str, Any]:
    """
    Best-effort conversion of LLM output to a JSON object.

    Tries the raw text, then a fenced block, then the outermost {...} span,
    then smart-quote and trailing-comma repairs. Raises ValueError when no
    candidate parses to a dict.
    """
    seen = set()
    for candidate in _candidates(text or ""):
        if candidate in seen:
            continue
        seen.add(candidate)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("Failed to parse JSON object from model output.")
