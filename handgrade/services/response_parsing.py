"""
Helpers for pulling JSON out of model responses.
"""
import json
import re
from typing import Optional

_FENCE_RE = re.compile(r'```(?:json)?\s*\n?|\n?```', re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences (``` or ```json) around a response."""
    return _FENCE_RE.sub('', text or '').strip()


def extract_json_object(text: str) -> Optional[dict]:
    """
    Parse a JSON object from a model response.

    Tries the fence-stripped text first, then the outermost {...} span.
    Returns None when neither parses to a dict.
    """
    cleaned = strip_code_fences(text)
    try:
        result = json.loads(cleaned)
        return result if isinstance(result, dict) else None
    except json.JSONDecodeError:
        pass

    first_brace = cleaned.find('{')
    last_brace = cleaned.rfind('}')
    if first_brace == -1 or last_brace == -1 or first_brace >= last_brace:
        return None

    try:
        result = json.loads(cleaned[first_brace:last_brace + 1])
    except json.JSONDecodeError:
        return None
    return result if isinstance(result, dict) else None
