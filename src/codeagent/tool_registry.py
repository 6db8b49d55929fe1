"""Single source of truth for all tool definitions.

Every tool the model may call is defined ONCE here. The system prompt,
the dispatcher's mutating check and the handler table validation all
derive their tool lists from this module.

Adding a new tool?  Add it here, then give it a handler in ``tools``;
startup validation refuses to run with either half missing.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .logger import get_logger

log = get_logger("registry")


# ── Tool Definition ──────────────────────────────────────────────

@dataclass
class ToolParam:
    """Metadata for a single tool parameter."""
    name: str
    required: bool = False
    description: str = ""


@dataclass
class ToolDef:
    """Canonical definition of a tool.

    ``mutating`` tools change the workspace: they go through the approval
    gate and snapshot files for revert. ``example`` is the args object
    shown to the model in the system prompt.
    """
    name: str
    category: str = "general"         # search, file, editor, shell, output
    mutating: bool = False
    params: List[ToolParam] = field(default_factory=list)
    example: str = "{}"
    description: str = ""


def _p(name: str, required: bool = False) -> ToolParam:
    return ToolParam(name, required=required)


_POSITION = [_p("path", True), _p("line", True), _p("character", True)]


# ── The Registry ─────────────────────────────────────────────────

TOOL_DEFS: List[ToolDef] = [
    # --- Search / exploration ---
    ToolDef("search", category="search",
            params=[_p("query", True), _p("include"), _p("exclude"), _p("maxResults")],
            example='{"query":"text","include":"**/*","exclude":"**/node_modules/**","maxResults":20}'),
    ToolDef("locate_file", category="search",
            params=[_p("query", True), _p("include"), _p("exclude"), _p("maxResults"), _p("patterns")],
            example='{"query":"filename","maxResults":20}'),
    ToolDef("list_files", category="search",
            params=[_p("include"), _p("exclude"), _p("maxResults")],
            example='{"include":"src/**/*.py","maxResults":200}'),
    ToolDef("file_stat", category="search", params=[_p("path", True)],
            example='{"path":"relative/path"}'),
    ToolDef("read_dir", category="search",
            params=[_p("path"), _p("maxDepth"), _p("maxEntries"), _p("exclude")],
            example='{"path":".","maxDepth":3,"maxEntries":400}'),

    # --- File reads ---
    ToolDef("read_file", category="file",
            params=[_p("path", True), _p("startLine"), _p("endLine"), _p("maxChars")],
            example='{"path":"relative/path","startLine":1,"endLine":200}'),
    ToolDef("read_files", category="file",
            params=[_p("paths", True), _p("ranges"), _p("maxChars")],
            example='{"paths":["a.py","b.py"],"ranges":[{"startLine":1,"endLine":80}]}'),
    ToolDef("read_file_range_by_symbols", category="editor",
            params=[_p("path", True), _p("symbols", True), _p("maxChars")],
            example='{"path":"relative/path","symbols":["ClassName","function_name"]}'),

    # --- Editor queries ---
    ToolDef("search_symbols", category="editor", params=[_p("query", True), _p("maxResults")],
            example='{"query":"SymbolName","maxResults":20}'),
    ToolDef("workspace_symbols", category="editor", params=[_p("query", True), _p("maxResults")],
            example='{"query":"SymbolName"}'),
    ToolDef("document_symbols", category="editor", params=[_p("path", True)],
            example='{"path":"relative/path"}'),
    ToolDef("definition", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("type_definition", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("implementation", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("references", category="editor", params=list(_POSITION) + [_p("includeDeclaration")],
            example='{"path":"relative/path","line":10,"character":5,"includeDeclaration":true}'),
    ToolDef("hover", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("signature_help", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("call_hierarchy_prepare", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("call_hierarchy_incoming", category="editor", params=[_p("itemId", True)],
            example='{"itemId":"chi_..."}'),
    ToolDef("call_hierarchy_outgoing", category="editor", params=[_p("itemId", True)],
            example='{"itemId":"chi_..."}'),
    ToolDef("rename_prepare", category="editor", params=list(_POSITION),
            example='{"path":"relative/path","line":10,"character":5}'),
    ToolDef("semantic_tokens", category="editor", params=[_p("path", True), _p("range")],
            example='{"path":"relative/path"}'),

    # --- Output ---
    ToolDef("read_output", category="output", params=[_p("maxChars"), _p("tail")],
            example='{"maxChars":12000,"tail":true}'),

    # --- File mutations ---
    ToolDef("edit_file", category="file", mutating=True,
            params=[_p("path", True), _p("startLine", True), _p("endLine", True), _p("newText", True)],
            example='{"path":"relative/path","startLine":1,"endLine":1,"newText":"replacement"}'),
    ToolDef("insert_text", category="file", mutating=True,
            params=[_p("path", True), _p("position", True), _p("text", True)],
            example='{"path":"relative/path","position":{"line":1,"character":1},"text":"..."}'),
    ToolDef("replace_range", category="file", mutating=True,
            params=[_p("path", True), _p("range", True), _p("text", True)],
            example='{"path":"relative/path","range":{"startLine":1,"startChar":1,"endLine":1,"endChar":5},"text":"..."}'),
    ToolDef("write_file", category="file", mutating=True,
            params=[_p("path", True), _p("content", True), _p("overwrite"), _p("append")],
            example='{"path":"relative/path","content":"...","overwrite":false}'),
    ToolDef("copy_file", category="file", mutating=True,
            params=[_p("from", True), _p("to", True), _p("overwrite")],
            example='{"from":"a.txt","to":"b.txt","overwrite":false}'),
    ToolDef("move_file", category="file", mutating=True,
            params=[_p("from", True), _p("to", True), _p("overwrite")],
            example='{"from":"a.txt","to":"b.txt","overwrite":false}'),
    ToolDef("create_dir", category="file", mutating=True, params=[_p("path", True)],
            example='{"path":"relative/dir"}'),
    ToolDef("delete_file", category="file", mutating=True,
            params=[_p("path", True), _p("recursive")],
            example='{"path":"relative/path","recursive":false}'),
    ToolDef("apply_patch", category="file", mutating=True,
            params=[_p("patch", True), _p("cwd")],
            example='{"patch":"--- a/file\\n+++ b/file\\n@@ ..."}'),
    # check-only; listed with the patch tools but changes nothing
    ToolDef("apply_patch_preview", category="file",
            params=[_p("patch", True), _p("cwd")],
            example='{"patch":"--- a/file\\n+++ b/file\\n@@ ..."}'),
    ToolDef("rename_apply", category="editor", mutating=True,
            params=list(_POSITION) + [_p("newName", True)],
            example='{"path":"relative/path","line":10,"character":5,"newName":"newName"}'),

    # --- Shell ---
    ToolDef("run_command", category="shell", mutating=True,
            params=[_p("command", True), _p("cwd"), _p("timeoutMs")],
            example='{"command":"npm test","cwd":".","timeoutMs":60000}'),
]

# Derived lookups (computed once at import time)
TOOL_NAMES: List[str] = [t.name for t in TOOL_DEFS]
MUTATING_TOOLS: set = {t.name for t in TOOL_DEFS if t.mutating}


def is_mutating(name: str) -> bool:
    return name in MUTATING_TOOLS


# ── Observability: ToolMetrics ───────────────────────────────────

class ToolMetrics:
    """Per-tool call count, timing and error count for the session."""

    def __init__(self):
        self._per_tool: Dict[str, Dict[str, float]] = {}

    def record(self, tool_name: str, elapsed_ms: float, success: bool,
               error: Optional[str] = None, result_size: int = 0) -> None:
        entry = self._per_tool.setdefault(tool_name, {"count": 0, "total_ms": 0.0, "errors": 0})
        entry["count"] += 1
        entry["total_ms"] += elapsed_ms
        if not success:
            entry["errors"] += 1
        log.info("tool %s elapsed=%.1fms success=%s result_size=%d%s",
                 tool_name, elapsed_ms, success, result_size, f" error={error}" if error else "")

    def summary(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "count": int(e["count"]),
                "avg_ms": round(e["total_ms"] / e["count"], 1),
                "errors": int(e["errors"]),
            }
            for name, e in self._per_tool.items()
        }
