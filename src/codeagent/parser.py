"""Parse raw model text into a typed turn.

Three encodings are tried in order and the first one that yields
something wins:

1. Strict JSON, either the whole reply, the reply with a code fence
   stripped, or the outermost ``{...}`` slice of it.
2. Tagged calls: ``[TOOL_CALLS]name[ARGS]{json}`` repeated.
3. An embedded scan: every top-level JSON object in the prose that
   carries a ``toolCalls`` array contributes its calls.

Independently, a ``todo``/``todos`` array is located anywhere in the
text and excised from the display text. Anything left over is returned
as UNPARSED so the caller can show it verbatim.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .scanner import (
    Span,
    excise_spans,
    extract_first_json_payload,
    iter_json_objects,
    safe_json_loads,
)
from .todo import TodoItem, normalize_todo_list

TOOL_CALLS_MARKER = "[TOOL_CALLS]"
ARGS_MARKER = "[ARGS]"

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n([\s\S]*?)\n```$")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass
class ToolCall:
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "ToolCall":
        if not isinstance(raw, dict) or not isinstance(raw.get("tool"), str):
            return cls(tool="", args={})
        args = raw.get("args")
        return cls(tool=raw["tool"], args=dict(args) if isinstance(args, dict) else {})

    def to_dict(self) -> Dict[str, Any]:
        return {"tool": self.tool, "args": self.args}


class TurnKind(str, Enum):
    FINAL = "final"
    TOOL_CALLS = "tool_calls"
    TODO = "todo"
    UNPARSED = "unparsed"


@dataclass
class ParsedTurn:
    """One interpretation of a model reply.

    ``display_text`` is the raw reply with any todo JSON removed; it is
    what a chat transcript shows. ``bare_todo`` marks a reply that is
    nothing but a todo update.
    """
    kind: TurnKind
    raw: str
    final: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    text: str = ""
    todo: Optional[List[TodoItem]] = None
    display_text: str = ""
    bare_todo: bool = False


# ── Helpers ──────────────────────────────────────────────────────

def strip_code_fence(text: str) -> str:
    trimmed = (text or "").strip()
    if not trimmed.startswith("```"):
        return trimmed
    match = _FENCE_RE.match(trimmed)
    if match:
        return match.group(1).strip()
    return trimmed


def _todo_field(obj: Dict[str, Any]) -> Optional[List[TodoItem]]:
    raw = obj.get("todo")
    if not isinstance(raw, list):
        raw = obj.get("todos")
    if not isinstance(raw, list):
        return None
    return normalize_todo_list(raw)


def _load_strict(text: str) -> Optional[Dict[str, Any]]:
    for candidate in (text, strip_code_fence(text), extract_first_json_payload(text)):
        parsed = safe_json_loads(candidate)
        if parsed is not None:
            return parsed if isinstance(parsed, dict) else None
    return None


# ── Stage 1: strict JSON ─────────────────────────────────────────

def parse_strict_json(text: str) -> Optional[ParsedTurn]:
    obj = _load_strict(text)
    if obj is None:
        return None
    todo = _todo_field(obj)
    for key in ("final", "reply"):
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return ParsedTurn(TurnKind.FINAL, raw=text, final=value, todo=todo)
    calls = obj.get("toolCalls")
    if isinstance(calls, list) and calls:
        extra = obj.get("text")
        return ParsedTurn(
            TurnKind.TOOL_CALLS, raw=text,
            tool_calls=[ToolCall.from_raw(c) for c in calls],
            text=extra.strip() if isinstance(extra, str) else "",
            todo=todo,
        )
    if isinstance(obj.get("tool"), str) and obj["tool"]:
        return ParsedTurn(
            TurnKind.TOOL_CALLS, raw=text,
            tool_calls=[ToolCall.from_raw({"tool": obj["tool"], "args": obj.get("args") or {}})],
            todo=todo,
        )
    if todo:
        return ParsedTurn(TurnKind.TODO, raw=text, todo=todo)
    return None


# ── Stage 2: tagged format ───────────────────────────────────────

def parse_tagged_tool_calls(text: str) -> Optional[ParsedTurn]:
    src = text or ""
    calls: List[ToolCall] = []
    parts: List[str] = []
    cursor = 0
    while cursor < len(src):
        tool_idx = src.find(TOOL_CALLS_MARKER, cursor)
        if tool_idx == -1:
            parts.append(src[cursor:])
            break
        parts.append(src[cursor:tool_idx])
        name_start = tool_idx + len(TOOL_CALLS_MARKER)
        args_idx = src.find(ARGS_MARKER, name_start)
        if args_idx == -1:
            parts.append(src[tool_idx:])
            break
        name = src[name_start:args_idx].strip()
        args_start = args_idx + len(ARGS_MARKER)
        next_idx = src.find(TOOL_CALLS_MARKER, args_start)
        end = len(src) if next_idx == -1 else next_idx
        args_text = src[args_start:end].strip()
        if name:
            args = safe_json_loads(args_text)
            if not isinstance(args, dict):
                args = safe_json_loads(extract_first_json_payload(args_text))
            calls.append(ToolCall(tool=name, args=args if isinstance(args, dict) else {}))
        else:
            parts.append(src[tool_idx:end])
        cursor = end

    if not calls:
        return None
    return ParsedTurn(TurnKind.TOOL_CALLS, raw=text, tool_calls=calls, text="".join(parts).strip())


# ── Stage 3: embedded JSON scan ──────────────────────────────────

def extract_tool_calls_from_text(text: str) -> Optional[ParsedTurn]:
    src = text or ""
    calls: List[ToolCall] = []
    spans: List[Span] = []
    for span, obj in iter_json_objects(src):
        raw_calls = obj.get("toolCalls")
        if isinstance(raw_calls, list):
            calls.extend(ToolCall.from_raw(c) for c in raw_calls)
            spans.append(span)
    if not calls:
        return None
    return ParsedTurn(
        TurnKind.TOOL_CALLS, raw=text, tool_calls=calls,
        text=excise_spans(src, spans).strip(),
    )


def extract_todo_from_text(text: str) -> Optional[Tuple[List[TodoItem], Span]]:
    """First embedded object with a non-empty todo/todos array, and its span."""
    for span, obj in iter_json_objects(text or ""):
        todo = _todo_field(obj)
        if todo:
            return todo, span
    return None


def strip_todo_json_from_text(text: str, span: Optional[Span]) -> str:
    """Remove a todo span; drop the enclosing code fence if that is all it held."""
    src = text or ""
    if not span or span[1] <= span[0]:
        return src.strip()
    start, end = span
    fence_start = src.rfind("```", 0, start)
    if fence_start != -1:
        fence_end = src.find("```", end)
        line_end = src.find("\n", fence_start + 3)
        if fence_end != -1 and line_end != -1 and line_end < fence_end:
            inner_start = line_end + 1
            if start >= inner_start and end <= fence_end:
                if not src[inner_start:start].strip() and not src[end:fence_end].strip():
                    joined = src[:fence_start] + src[fence_end + 3:]
                    return _BLANK_RUN_RE.sub("\n\n", joined).strip()
    return _BLANK_RUN_RE.sub("\n\n", src[:start] + src[end:]).strip()


def is_bare_todo_response(turn: ParsedTurn, raw_text: str) -> bool:
    """True when the reply is exactly one (optionally fenced) todo JSON payload."""
    if not turn.todo or turn.final or turn.tool_calls:
        return False
    raw = (raw_text or "").strip()
    payload = extract_first_json_payload(raw)
    if not payload:
        return False
    return strip_code_fence(raw) == payload.strip()


# ── Entry point ──────────────────────────────────────────────────

def parse_response(text: str) -> ParsedTurn:
    """Interpret a model reply. Never raises."""
    raw = text or ""
    turn = parse_strict_json(raw)
    from_strict = turn is not None
    if turn is None:
        turn = parse_tagged_tool_calls(raw) or extract_tool_calls_from_text(raw)

    extraction = extract_todo_from_text(raw)
    if turn is None and extraction is not None:
        turn = ParsedTurn(TurnKind.TODO, raw=raw, todo=extraction[0])
    elif turn is not None and turn.todo is None and extraction is not None:
        turn.todo = extraction[0]

    display = strip_todo_json_from_text(raw, extraction[1]) if extraction else raw.strip()

    if turn is None:
        return ParsedTurn(TurnKind.UNPARSED, raw=raw, text=raw, display_text=display)

    turn.display_text = display
    if turn.kind is TurnKind.TODO:
        turn.bare_todo = is_bare_todo_response(turn, raw) if from_strict else not display
    return turn
