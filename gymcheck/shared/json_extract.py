"""Tolerant extraction of one JSON object from free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

_FENCE_RE = re.compile(r"```(?:[A-Za-z0-9_-]+)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

MAX_TRIM_ATTEMPTS = 50


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def extract_json_object(raw: Any, max_attempts: int = MAX_TRIM_ATTEMPTS) -> Optional[Dict[str, Any]]:
    """Return the first parseable JSON object in ``raw`` or ``None``.

    Handles fenced blocks (with or without a language tag), prose before and
    after the object, and trailing garbage after the object. When the greedy
    ``{...}`` span fails to parse, the candidate is cut back to the previous
    closing brace and retried, up to ``max_attempts`` times.
    """

    if not isinstance(raw, str) or not raw.strip():
        return None

    text = strip_code_fence(raw.strip())
    match = _OBJECT_RE.search(text)
    if not match:
        return None

    candidate = match.group(0)
    for _ in range(max_attempts):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            cut = candidate.rfind("}", 0, len(candidate) - 1)
            if cut <= 0:
                return None
            candidate = candidate[: cut + 1]
            continue
        return parsed if isinstance(parsed, dict) else None
    return None
