"""
Best-effort recovery of a JSON value from model output.

Models asked for "JSON only" still wrap their answer in prose or markdown fences often enough
that the strict parse cannot be the whole story.  :func:`parse_structured` tries a strict parse
first and then falls back to the first balanced ``{...}`` span.  The scan is string- and
escape-aware, but prose containing braces before the JSON can still capture the wrong span, so
treat the fallback as probabilistic.
"""

import json
from typing import (
    Any,
    Tuple,
)

from toolbridge.core.errors import MalformedStructuredResponse


class UnbalancedJSONError(ValueError):
    """Raised when no complete ``{...}`` span can be found."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def _skip_string(s: str, i: int) -> int:
    """Given s[i] == '"', return index just past the closing quote, honouring escapes."""
    i += 1
    esc = False
    while i < len(s):
        ch = s[i]
        if esc:
            esc = False
        elif ch == "\\":
            esc = True
        elif ch == '"':
            return i + 1
        i += 1
    raise UnbalancedJSONError("unterminated string literal")


def _find_matching_brace(s: str, i: int) -> int:
    """Given s[i] == '{', return index just past its matching '}'."""
    depth = 0
    while i < len(s):
        ch = s[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        elif ch == '"':
            i = _skip_string(s, i)  # skip over quoted section
            continue  # i already advanced
        i += 1
    raise UnbalancedJSONError("unbalanced braces")


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
def first_balanced_object(text: str) -> Tuple[int, int]:
    """Return ``(start, end)`` of the first balanced ``{...}`` span in *text*."""
    start = text.find("{")
    if start < 0:
        raise UnbalancedJSONError("no '{' in text")
    return start, _find_matching_brace(text, start)


def parse_structured(text: str) -> Any:
    """
    Parse *text* as JSON, falling back to its first balanced ``{...}`` span.

    Raises
    ------
    MalformedStructuredResponse
        If neither the full text nor the extracted span is valid JSON.
    """
    if not isinstance(text, str):
        raise MalformedStructuredResponse(f"expected text, got {type(text).__name__}")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    try:
        start, end = first_balanced_object(text)
        return json.loads(text[start:end])
    except (UnbalancedJSONError, json.JSONDecodeError) as exc:
        raise MalformedStructuredResponse(f"no valid JSON object in reply: {text[:200]!r}") from exc
