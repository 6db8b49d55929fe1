"""Balanced-brace scanner for JSON objects embedded in free-form text.

Models often wrap their JSON in prose or code fences. The scanner walks
the text one character at a time and reports every top-level ``{...}``
span. Braces inside double-quoted strings are ignored, and a backslash
inside a string escapes the following character, so ``"\\"}"`` never
closes an object.
"""

import json
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

Span = Tuple[int, int]


class ScanState(Enum):
    DEFAULT = "default"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


def iter_brace_spans(text: str) -> Iterator[Span]:
    """Yield ``(start, end)`` for each top-level brace span; ``end`` is exclusive."""
    state = ScanState.DEFAULT
    depth = 0
    start = -1
    for i, ch in enumerate(text or ""):
        if state is ScanState.ESCAPED:
            state = ScanState.IN_STRING
            continue
        if state is ScanState.IN_STRING:
            if ch == "\\":
                state = ScanState.ESCAPED
            elif ch == '"':
                state = ScanState.DEFAULT
            continue
        if ch == '"':
            state = ScanState.IN_STRING
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                yield start, i + 1
                start = -1


def safe_json_loads(text: str) -> Optional[Any]:
    """json.loads that returns None instead of raising."""
    if not text:
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def iter_json_objects(text: str) -> Iterator[Tuple[Span, Dict[str, Any]]]:
    """Yield each top-level span that parses as a JSON object, with the object."""
    for start, end in iter_brace_spans(text):
        parsed = safe_json_loads(text[start:end])
        if isinstance(parsed, dict):
            yield (start, end), parsed


def excise_spans(text: str, spans: List[Span]) -> str:
    """Remove the given (sorted, non-overlapping) spans from ``text``."""
    out = []
    cursor = 0
    for start, end in spans:
        if start > cursor:
            out.append(text[cursor:start])
        cursor = max(cursor, end)
    out.append(text[cursor:])
    return "".join(out)


def extract_first_json_payload(text: str) -> str:
    """Outermost ``{...}`` (or failing that ``[...]``) slice of the text, else ""."""
    src = text or ""
    obj_start = src.find("{")
    obj_end = src.rfind("}")
    if obj_start != -1 and obj_end > obj_start:
        return src[obj_start:obj_end + 1]
    arr_start = src.find("[")
    arr_end = src.rfind("]")
    if arr_start != -1 and arr_end > arr_start:
        return src[arr_start:arr_end + 1]
    return ""
