"""Extraction of JSON values from free-form generator output.

Stages, in order:

1. Locate a span from the first opening bracket to the last closing
   bracket of the same kind (to the end of the text if none closes).
2. Strict ``json.loads`` of that span.
3. Brace balancing: append the missing ``}`` (counted without regard to
   string contents) and a closing ``]`` for arrays, then parse again.
4. Truncation repair: scan the span with string awareness, cut it after
   the last complete nested value and close whatever is still open.

If all stages fail, ``ResponseParseError`` carries the raw text.
"""

import json
from typing import Any, Literal

from tastegraph.logging import get_logger

logger = get_logger(__name__)

Expect = Literal["object", "array"]

_CLOSERS = {"{": "}", "[": "]"}


class ResponseParseError(Exception):
    """Generator output could not be turned into a JSON value."""

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text


def _locate_span(text: str, expect: Expect | None) -> tuple[str, str] | None:
    if expect == "object":
        opener = "{"
    elif expect == "array":
        opener = "["
    else:
        positions = [(text.find(o), o) for o in _CLOSERS if text.find(o) != -1]
        if not positions:
            return None
        opener = min(positions)[1]

    start = text.find(opener)
    if start == -1:
        return None

    end = text.rfind(_CLOSERS[opener])
    span = text[start:] if end < start else text[start : end + 1]
    return span, opener


def _strict(span: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(span)
    except (json.JSONDecodeError, ValueError):
        return False, None


def balance_braces(span: str, opener: str) -> str:
    """Close unmatched ``{`` and a missing trailing ``]``.

    Braces inside string values are counted too, so this can misfire on
    payloads that contain literal braces; ``truncate_to_complete`` covers
    those cases.
    """
    missing = span.count("{") - span.count("}")
    repaired = span + "}" * max(missing, 0)
    if opener == "[" and not repaired.rstrip().endswith("]"):
        repaired += "]"
    return repaired


def truncate_to_complete(span: str) -> str | None:
    """Cut ``span`` after its last complete nested value and close it.

    Returns the first complete top-level value when one exists, otherwise
    the truncated-and-closed text, or ``None`` when nothing complete was
    seen or brackets are mismatched.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    last_cut: tuple[int, tuple[str, ...]] | None = None

    for index, char in enumerate(span):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if not stack or stack[-1] != char:
                return None
            stack.pop()
            if not stack:
                return span[: index + 1]
            last_cut = (index + 1, tuple(stack))

    if last_cut is None:
        return None

    cut, still_open = last_cut
    return span[:cut] + "".join(reversed(still_open))


def _matches(value: Any, expect: Expect | None) -> bool:
    if expect == "object":
        return isinstance(value, dict)
    if expect == "array":
        return isinstance(value, list)
    return isinstance(value, (dict, list))


def parse_structured(raw_text: str | None, expect: Expect | None = None) -> Any:
    """Extract a JSON object or array from generator text.

    Args:
        raw_text: Raw generator output (may be fenced, wrapped or truncated)
        expect: Required top-level kind, or None for whichever appears first

    Returns:
        Parsed dict or list

    Raises:
        ResponseParseError: If no stage produces a value of the expected kind
    """
    text = raw_text or ""
    located = _locate_span(text, expect)
    if located is None:
        raise ResponseParseError("No JSON value found in response", raw_text=text)

    span, opener = located

    ok, value = _strict(span)
    if ok and _matches(value, expect):
        return value

    ok, value = _strict(balance_braces(span, opener))
    if ok and _matches(value, expect):
        logger.warning("Recovered generator output by brace balancing")
        return value

    truncated = truncate_to_complete(span)
    if truncated is not None:
        ok, value = _strict(truncated)
        if ok and _matches(value, expect):
            logger.warning(
                f"Recovered generator output by truncation "
                f"({len(truncated)}/{len(span)} chars kept)"
            )
            return value

    logger.debug(f"Unparseable generator output: {text[:500]}")
    raise ResponseParseError("Failed to parse JSON from response", raw_text=text)


def parse_object(raw_text: str | None) -> dict[str, Any]:
    """Extract a JSON object."""
    return parse_structured(raw_text, expect="object")


def parse_array(raw_text: str | None) -> list[Any]:
    """Extract a JSON array."""
    return parse_structured(raw_text, expect="array")
