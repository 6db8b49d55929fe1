"""Tool dispatcher: normalize a call, run it, render the call and its result.

``execute`` never raises for tool problems. Unknown tools, invalid calls
and handler exceptions all come back as result text that flows into the
transcript like any other tool output. Only cancellation propagates.
"""

import json
from typing import Any, Dict, List

from .editor import Diagnostic
from .errors import CodeAgentError
from .logger import get_logger
from .parser import ToolCall
from .tool_registry import is_mutating
from .tools.registry import ToolContext, ToolRegistry
from .tools.search_tools import is_likely_file_query

log = get_logger("dispatcher")

MAX_PROBLEMS = 50
CODE_RESULT_TOOLS = {"read_file", "read_files", "read_file_range_by_symbols", "read_output"}
_POSITION_TOOLS = {
    "definition", "type_definition", "implementation", "hover", "signature_help",
    "call_hierarchy_prepare", "rename_prepare",
}


def normalize_tool_call(call: ToolCall) -> ToolCall:
    """Redirect a ``search`` for something that looks like a file name to ``locate_file``."""
    args = dict(call.args or {})
    if call.tool == "search":
        query = str(args.get("query") or "").strip()
        if is_likely_file_query(query):
            args["query"] = query
            return ToolCall(tool="locate_file", args=args)
    return ToolCall(tool=call.tool, args=args)


def command_signature(args: Dict[str, Any]) -> str:
    """Identity of a run_command call for the repeat-command check."""
    timeout = args.get("timeoutMs")
    try:
        timeout = float(timeout) if timeout not in (None, "") else ""
    except (TypeError, ValueError):
        timeout = str(timeout)
    return json.dumps({
        "command": str(args.get("command") or "").strip(),
        "cwd": str(args.get("cwd") or "").strip(),
        "timeoutMs": timeout,
    }, sort_keys=True)


# ── Transcript rendering ─────────────────────────────────────────

def _s(args: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = args.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _n(value: Any):
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


def _pos(args: Dict[str, Any]) -> str:
    line, character = _n(args.get("line")), _n(args.get("character"))
    return f" @ {line}:{character}" if line and character else ""


def _join(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value or "").strip()


def describe_tool_call(call: ToolCall) -> str:
    """One transcript line (or block) announcing a tool call."""
    if not call or not isinstance(call.tool, str) or not call.tool:
        return "Tool call: (invalid)"
    tool, args = call.tool, call.args or {}
    target = _s(args, "uri", "path")

    if tool in ("search", "list_files"):
        include = f" include={args['include']}" if args.get("include") else ""
        exclude = f" exclude={args['exclude']}" if args.get("exclude") else ""
        if tool == "search":
            return f'Tool call: search "{_s(args, "query")}"{include}{exclude}'
        return f"Tool call: list_files{include}{exclude}"
    if tool in ("read_file", "edit_file"):
        start, end = _n(args.get("startLine")), _n(args.get("endLine"))
        rng = f" lines {start}-{end}" if start and end else ""
        return f"Tool call: {tool} {_s(args, 'path')}{rng}"
    if tool == "read_files":
        return f"Tool call: read_files {_join(args.get('paths'))}"
    if tool == "read_file_range_by_symbols":
        return f"Tool call: read_file_range_by_symbols {_s(args, 'path')} ({_join(args.get('symbols'))})"
    if tool in ("search_symbols", "workspace_symbols"):
        return f'Tool call: {tool} "{_s(args, "query")}"'
    if tool == "locate_file":
        return f'Tool call: locate_file "{_s(args, "query", "name")}"'
    if tool in ("document_symbols", "semantic_tokens"):
        return f"Tool call: {tool} {target}"
    if tool in _POSITION_TOOLS:
        return f"Tool call: {tool} {target}{_pos(args)}"
    if tool == "references":
        excl = " (exclude declaration)" if args.get("includeDeclaration") is False else ""
        return f"Tool call: references {target}{_pos(args)}{excl}"
    if tool in ("call_hierarchy_incoming", "call_hierarchy_outgoing"):
        return f"Tool call: {tool} {_s(args, 'itemId', 'id')}"
    if tool == "rename_apply":
        name = _s(args, "newName")
        return f"Tool call: rename_apply {target}{_pos(args)}{f' -> {name}' if name else ''}"
    if tool == "insert_text":
        pos = args.get("position") if isinstance(args.get("position"), dict) else {}
        line = _n(args.get("line")) if _n(args.get("line")) is not None else _n(pos.get("line"))
        character = _n(args.get("character")) if _n(args.get("character")) is not None else _n(pos.get("character"))
        at = f" @ {line}:{character}" if line is not None and character is not None else ""
        return f"Tool call: insert_text {_s(args, 'path')}{at}"
    if tool == "replace_range":
        return f"Tool call: replace_range {_s(args, 'path')}"
    if tool == "copy_file":
        overwrite = " overwrite" if args.get("overwrite") else ""
        return f"Tool call: copy_file {_s(args, 'from')} -> {_s(args, 'to')}{overwrite}"
    if tool == "move_file":
        return f"Tool call: move_file {_s(args, 'from')} -> {_s(args, 'to')}"
    if tool in ("apply_patch", "apply_patch_preview"):
        patch = str(args.get("patch") or args.get("diff") or "")
        size = f"{len(patch)} chars" if patch else "empty"
        return f"Tool call: {tool} ({size})"
    if tool == "file_stat":
        return f"Tool call: file_stat {_s(args, 'path')}"
    if tool == "write_file":
        overwrite = " overwrite" if args.get("overwrite") else ""
        append = " append" if args.get("append") else ""
        return f"Tool call: write_file {_s(args, 'path')}{overwrite}{append}"
    if tool == "create_dir":
        return f"Tool call: create_dir {_s(args, 'path')}"
    if tool == "delete_file":
        recursive = " recursive" if args.get("recursive") else ""
        return f"Tool call: delete_file {_s(args, 'path')}{recursive}"
    if tool == "run_command":
        lines = ["Tool call: run_command", f"- command: `{_s(args, 'command') or '(empty)'}`"]
        if _s(args, "cwd"):
            lines.append(f"- cwd: `{_s(args, 'cwd')}`")
        return "\n".join(lines)
    if tool == "read_dir":
        depth = _n(args.get("maxDepth"))
        return f"Tool call: read_dir {_s(args, 'path')}{f' depth={depth}' if depth is not None else ''}"
    if tool == "read_output":
        max_chars = _n(args.get("maxChars"))
        suffix = f" maxChars={max_chars}" if max_chars is not None else ""
        suffix += " tail=false" if args.get("tail") is False else ""
        return f"Tool call: read_output{suffix}"
    return f"Tool call: {tool}"


def format_tool_result(tool: str, result_text: str) -> str:
    """``Tool result (<tool>):`` block; command output and file reads are fenced."""
    label = f"Tool result ({tool}):" if tool else "Tool result:"
    body = (result_text or "").strip()
    if tool == "run_command":
        return f"{label}\n```\n{body}\n```"
    if tool in CODE_RESULT_TOOLS:
        if "```" in body:
            return f"{label}\n{body}"
        return f"{label}\n```\n{body}\n```"
    return f"{label}\n{result_text or ''}"


def format_problems(diagnostics: List[Diagnostic], relpath, max_items: int = MAX_PROBLEMS) -> List[str]:
    items = []
    for diag in diagnostics[:max_items]:
        code = f" [{diag.code}]" if diag.code else ""
        source = f" ({diag.source})" if diag.source else ""
        items.append(
            f"- {relpath(diag.path)}:{diag.line}:{diag.character} {diag.severity}{code}{source}: {diag.message}"
        )
    return items


# ── Dispatcher ───────────────────────────────────────────────────

class ToolDispatcher:
    """Runs tool calls against a registry inside one session's context."""

    def __init__(self, registry: ToolRegistry, context: ToolContext):
        self.registry = registry
        self.context = context

    @staticmethod
    def is_mutating(call: ToolCall) -> bool:
        return bool(call and is_mutating(call.tool))

    async def execute(self, call: ToolCall) -> str:
        if not call or not isinstance(call.tool, str) or not call.tool:
            return "Invalid tool call."
        result = await self.registry.execute(self.context, call.tool, call.args or {})
        if not result.success:
            log.warning("Tool %s: %s", call.tool, result.to_message())
        return result.to_message()

    async def collect_problems(self, max_items: int = MAX_PROBLEMS) -> List[str]:
        """Workspace diagnostics as transcript lines; [] when the editor has none."""
        try:
            diagnostics = await self.context.editor.diagnostics()
        except CodeAgentError as e:
            log.warning("Diagnostics unavailable: %s", e)
            return []
        return format_problems(diagnostics or [], self.context.workspace.relpath, max_items)
