"""Repair and parse structured output returned by completion models.

Models frequently wrap JSON in prose or code fences, leave comments in it,
forget to quote keys, or emit stray quote characters. Everything here is a
pure function over text; ``parse_llm_json`` chains them together and hands
the result to ``json_repair`` before the final ``json.loads``.
"""

import json
import logging
import re
from typing import Any, Literal, Optional, Sequence

from json_repair import repair_json
from pydantic import BaseModel

from .errors import ResponseParseError

LOGGER = logging.getLogger(__name__)

_CLOSERS = {"{": "}", "[": "]"}

_UNQUOTED_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_INVALID_CHILD_PROPERTY = re.compile(r'^\s*"\s*,\s*(\r?\n|$)', re.MULTILINE)
_TOLERANT_FIELD = re.compile(
    r'"([^"]+)"\s*:\s*(.+?)(?=,\s*"[^"]+"\s*:|$)',
    re.DOTALL,
)


class PropertyDetails(BaseModel):
    """A field expected in a flat JSON object and the type it should be coerced to."""

    name: str
    type: Literal["string", "number", "boolean"] = "string"


MAIN_IMAGE_PROMPT_PROPERTIES = (
    PropertyDetails(name="prompt", type="string"),
    PropertyDetails(name="negative_prompt", type="string"),
    PropertyDetails(name="prompt_summary", type="string"),
    PropertyDetails(name="user_input_has_complaints", type="boolean"),
)


def extract_top_bracketed_content(text: str) -> Optional[str]:
    """Return the first top-level JSON object or array found in ``text``.

    Matching is string-aware so brackets inside quoted values do not count.
    If the structure is never closed the remainder of the text is returned
    and left for repair.
    """
    start = -1
    for i, ch in enumerate(text):
        if ch in _CLOSERS:
            start = i
            break
    if start < 0:
        return None

    stack = []
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
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start:i + 1]
    return text[start:]


def strip_json_comments(text: str) -> str:
    """Remove ``//`` line comments and ``/* */`` block comments outside strings."""
    out = []
    i = 0
    in_string = False
    n = len(text)
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end < 0 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end < 0 else end + 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def quote_unquoted_keys(text: str) -> str:
    return _UNQUOTED_KEY.sub(r'\1"\2"\3', text)


def remove_invalid_child_properties(text: str) -> str:
    """Drop lines that hold nothing but a dangling quote and comma."""
    return _INVALID_CHILD_PROPERTY.sub("", text)


def _try_loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return False, None


def parse_llm_json(
    text: str,
    property_details: Optional[Sequence[PropertyDetails]] = None,
) -> Any:
    """Parse model output into JSON, repairing it if needed.

    Args:
        text: Raw completion text.
        property_details: If given, extract these flat fields tolerantly
            instead of parsing the whole document.

    Returns:
        Parsed JSON value.

    Raises:
        ResponseParseError: If the text cannot be coerced into JSON.
    """
    if property_details:
        return extract_json_fields_with_tolerance(text, property_details)

    bracketed = extract_top_bracketed_content(text)
    if bracketed is None:
        raise ResponseParseError(f"No JSON object or array found in response: {text[:200]!r}")

    cleaned = strip_json_comments(bracketed)
    ok, value = _try_loads(cleaned)
    if ok:
        return value

    LOGGER.debug("Response needs repair: %r", cleaned[:200])
    cleaned = remove_invalid_child_properties(quote_unquoted_keys(cleaned))
    ok, value = _try_loads(cleaned)
    if ok:
        return value

    ok, value = _try_loads(repair_json(cleaned))
    if ok and value != "":
        return value
    raise ResponseParseError(f"Unable to repair JSON response: {text[:200]!r}")


def _coerce(raw: str, kind: str) -> Any:
    value = raw.strip().rstrip(",").strip()
    if kind == "boolean":
        return value.strip('"').strip().lower() == "true"
    if kind == "number":
        number = value.strip('"').strip()
        try:
            return int(number)
        except ValueError:
            try:
                return float(number)
            except ValueError as e:
                raise ResponseParseError(f"Not a number: {number!r}") from e
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value[1:-1]
    return value


def extract_json_fields_with_tolerance(
    text: str,
    property_details: Sequence[PropertyDetails],
) -> dict[str, Any]:
    """Pull known fields out of a flat, possibly broken JSON object.

    String values may contain unescaped quotes; a value runs until the next
    ``, "key":`` or the closing brace.

    Raises:
        ResponseParseError: If none of the expected fields are present.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ResponseParseError("No JSON object found in response")
    body = strip_json_comments(text[start + 1:end]).strip()

    wanted = {p.name: p.type for p in property_details}
    fields: dict[str, Any] = {}
    for match in _TOLERANT_FIELD.finditer(body):
        name = match.group(1)
        if name in wanted and name not in fields:
            fields[name] = _coerce(match.group(2), wanted[name])

    if not fields:
        raise ResponseParseError(
            f"None of the expected fields {sorted(wanted)} found in response"
        )
    return fields
