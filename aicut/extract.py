"""Structured-output extraction from language-model text.

``extract_structured`` is the authoritative parser used once a response is
complete. ``extract_partial`` and ``extract_partial_array`` are best-effort
readers polled after every streamed chunk; they never raise and only report
fields that are already closed in the text.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from aicut.errors import ParseError

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)\s*```")

_WHITESPACE = " \t\r\n"


def _try_parse(candidate: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(candidate)
    except ValueError:
        return False, None


def extract_structured(text: str) -> Any:
    """Parse a JSON value out of mixed model output.

    Strategies, first success wins:

    1. a fenced block tagged ``json``
    2. any fenced block
    3. first ``{`` to last ``}``
    4. first ``[`` to last ``]``
    5. the whole text

    Raises:
        ParseError: If every strategy fails.
    """
    match = _JSON_FENCE.search(text)
    if match and match.group(1):
        ok, value = _try_parse(match.group(1))
        if ok:
            return value

    match = _ANY_FENCE.search(text)
    if match and match.group(1):
        ok, value = _try_parse(match.group(1))
        if ok:
            return value

    for opener, closer in (("{", "}"), ("[", "]")):
        first = text.find(opener)
        last = text.rfind(closer)
        if first != -1 and last > first:
            ok, value = _try_parse(text[first:last + 1])
            if ok:
                return value

    ok, value = _try_parse(text)
    if ok:
        return value

    excerpt = text[:200]
    raise ParseError(f"No JSON value found in model output: {excerpt!r}", text=text)


# ----------------------------------------------------------------------
# Streaming helpers
# ----------------------------------------------------------------------

def _string_end(text: str, start: int) -> int:
    """Index of the quote closing the string opened at ``start``, or -1."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i
        i += 1
    return -1


def _skip_ws(text: str, i: int) -> int:
    n = len(text)
    while i < n and text[i] in _WHITESPACE:
        i += 1
    return i


def _decode_string(literal: str) -> str | None:
    try:
        value = json.loads(literal)
    except ValueError:
        return None
    return value if isinstance(value, str) else None


def _closed_string_fields(text: str) -> dict[str, str]:
    """Collect ``"key": "value"`` pairs of the outermost object that are fully closed.

    Single left-to-right pass; nested objects and arrays are skipped so that
    their inner keys are never reported as top-level fields.
    """
    result: dict[str, str] = {}
    obj_start = text.find("{")
    arr_start = text.find("[")
    if obj_start == -1 or (arr_start != -1 and arr_start < obj_start):
        return result

    n = len(text)
    depth = 0
    expect_key = False
    i = obj_start
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _string_end(text, i)
            if end == -1:
                break
            if depth == 1 and expect_key:
                expect_key = False
                j = _skip_ws(text, end + 1)
                if j < n and text[j] == ":":
                    j = _skip_ws(text, j + 1)
                    if j < n and text[j] == '"':
                        value_end = _string_end(text, j)
                        if value_end == -1:
                            break
                        key = _decode_string(text[i:end + 1])
                        value = _decode_string(text[j:value_end + 1])
                        if key is not None and value is not None:
                            result[key] = value
                        i = value_end + 1
                        continue
                    i = j
                    continue
            i = end + 1
            continue

        if ch in "{[":
            depth += 1
            if depth == 1:
                expect_key = True
        elif ch in "}]":
            depth -= 1
            if depth <= 0:
                break
            if depth == 1:
                expect_key = False
        elif ch == "," and depth == 1:
            expect_key = True
        i += 1
    return result


def extract_partial(text: str) -> dict[str, Any]:
    """Best-effort read of an incomplete JSON object; never raises.

    Closed top-level string fields are collected first, then a repair is
    attempted by appending a single ``}``. Fields from a successful repaired
    parse win over the scanned ones. Returns ``{}`` when nothing is usable.
    """
    try:
        result: dict[str, Any] = dict(_closed_string_fields(text))

        attempt = text.strip()
        if not attempt.endswith("}"):
            attempt += "}"
        ok, repaired = _try_parse(attempt)
        if ok and isinstance(repaired, dict):
            result.update(repaired)
        return result
    except Exception:  # noqa: BLE001 - must never raise mid-stream
        logger.debug("Partial extraction failed", exc_info=True)
        return {}


def extract_partial_array(text: str) -> list[dict[str, Any]]:
    """Return the fully closed object elements of the first JSON array in ``text``.

    Used while a storyboard (an array of scenes) is still streaming. Elements
    that are not objects are ignored. Never raises.
    """
    items: list[dict[str, Any]] = []
    try:
        start = text.find("[")
        if start == -1:
            return items

        n = len(text)
        depth = 0
        element_start = -1
        i = start
        while i < n:
            ch = text[i]
            if ch == '"':
                end = _string_end(text, i)
                if end == -1:
                    break
                i = end + 1
                continue
            if ch in "{[":
                depth += 1
                if depth == 2 and ch == "{":
                    element_start = i
            elif ch in "}]":
                if depth == 2 and ch == "}" and element_start != -1:
                    ok, value = _try_parse(text[element_start:i + 1])
                    if ok and isinstance(value, dict):
                        items.append(value)
                    element_start = -1
                depth -= 1
                if depth <= 0:
                    break
            i += 1
    except Exception:  # noqa: BLE001 - must never raise mid-stream
        logger.debug("Partial array extraction failed", exc_info=True)
    return items
