"""Tolerant JSON extraction from free-form model output.

Attempts, in order, and the first that parses wins:
1. the whole trimmed response
2. the contents of the first fenced code block
3. the widest [...] substring
4. the widest {...} substring
"""

import json
import re
from typing import Any, Optional, Tuple

from ..errors import ResponseFormatError

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")


def _try_parse(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def _between(text: str, opening: str, closing: str) -> Optional[str]:
    first = text.find(opening)
    last = text.rfind(closing)
    if first == -1 or last <= first:
        return None
    return text[first:last + 1]


def extract_json(raw: str) -> Any:
    trimmed = (raw or "").strip()
    if trimmed:
        ok, data = _try_parse(trimmed)
        if ok:
            return data

    fence = _FENCE_RE.search(trimmed)
    if fence and fence.group(1).strip():
        ok, data = _try_parse(fence.group(1).strip())
        if ok:
            return data

    for opening, closing in (("[", "]"), ("{", "}")):
        candidate = _between(trimmed, opening, closing)
        if candidate is not None:
            ok, data = _try_parse(candidate)
            if ok:
                return data

    raise ResponseFormatError()
