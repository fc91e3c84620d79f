"""
Lenient JSON extraction from model output.

Models wrap JSON in code fences, prepend commentary or trail off. parse_structured
tries progressively looser strategies and always returns a tagged result instead
of raising, so callers branch on ``kind`` rather than catching exceptions.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


@dataclass(frozen=True)
class StructuredResult:
    """Outcome of parsing model text: ``structured`` data or the caller's ``fallback``."""

    kind: str  # structured, fallback
    data: Any
    reason: Optional[str] = None

    @property
    def is_structured(self) -> bool:
        return self.kind == "structured"


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    stripped = re.sub(r"^```(?:json)?\s*", "", stripped, flags=re.IGNORECASE)
    stripped = re.sub(r"\s*```$", "", stripped)
    return stripped.strip()


def _try_load(candidate: str) -> Optional[Any]:
    try:
        value = json.loads(candidate)
    except (TypeError, ValueError):
        return None
    if isinstance(value, (dict, list)):
        return value
    return None


def _first_balanced_block(text: str) -> Optional[str]:
    """Return the first balanced {...} or [...] block, respecting string literals."""
    start = None
    for i, ch in enumerate(text):
        if ch in "{[":
            start = i
            break
    if start is None:
        return None

    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_structured(text: Optional[str], fallback: Any = None) -> StructuredResult:
    """Extract a JSON object or array from ``text``; never raises."""
    if not text or not str(text).strip():
        return StructuredResult(kind="fallback", data=fallback, reason="empty response")

    text = str(text)

    direct = _try_load(_strip_fences(text))
    if direct is not None:
        return StructuredResult(kind="structured", data=direct)

    fence = _FENCE_RE.search(text)
    if fence:
        fenced = _try_load(fence.group(1).strip())
        if fenced is not None:
            return StructuredResult(kind="structured", data=fenced)

    block = _first_balanced_block(text)
    if block:
        extracted = _try_load(block)
        if extracted is not None:
            return StructuredResult(kind="structured", data=extracted)

    logger.warning(f"Could not extract JSON from model output ({len(text)} chars)")
    return StructuredResult(kind="fallback", data=fallback, reason="no parseable JSON found")
