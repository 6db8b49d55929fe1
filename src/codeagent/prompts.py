"""System prompts for agent and chat mode.

The tool schema lines are generated from ``tool_registry`` so the prompt
can never advertise a tool the dispatcher does not know about.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logger import get_logger
from .tool_registry import TOOL_DEFS, ToolDef

_log = get_logger("prompts")

AGENT_RULES_FILE = "agent.md"


def load_agent_rules(workspace_path) -> str:
    """Load ``agent.md`` from the workspace root, if it exists.

    Returns the file content, or empty string if the file is missing/empty.
    """
    agent_md = Path(workspace_path) / AGENT_RULES_FILE
    if agent_md.exists():
        try:
            content = agent_md.read_text(encoding="utf-8").strip()
            if content:
                _log.debug("Loaded %s (%d chars) from %s", AGENT_RULES_FILE, len(content), workspace_path)
                return content
        except (OSError, UnicodeDecodeError) as e:
            _log.warning("Failed to read %s: %s", AGENT_RULES_FILE, e)
    return ""


def tool_schema_line(tool: ToolDef) -> str:
    return f'{{"toolCalls":[{{"tool":"{tool.name}","args":{tool.example}}}]}}'


def tool_schema_lines(include_mutating: bool) -> List[str]:
    return [tool_schema_line(t) for t in TOOL_DEFS if include_mutating or not t.mutating]


def build_context_block(contexts: Optional[List[Dict[str, Any]]]) -> str:
    """Render pinned context entries (selections, notes) for the prompt."""
    blocks = []
    for ctx in contexts or []:
        if not isinstance(ctx, dict):
            continue
        title = ctx.get("title") or ctx.get("filePath") or ctx.get("kind") or "Context"
        parts = [f"Context: {title}"]
        if ctx.get("filePath"):
            parts.append(f"File: {ctx['filePath']}")
        if ctx.get("languageId"):
            parts.append(f"Language: {ctx['languageId']}")
        selection = ctx.get("selection")
        if isinstance(selection, dict):
            parts.append(f"Selection: lines {selection.get('startLine')}-{selection.get('endLine')}")
        for key, label in (("code", "Selected code:"), ("extraContext", "Additional context:"),
                           ("content", "Notes:")):
            value = str(ctx.get(key) or "").strip()
            if value:
                parts.extend([label, value])
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks)


_PROTOCOL_FOOTER = [
    'When done, respond with {"final":"..."} and no other text.',
    'If no tool is needed, respond with {"final":"..."}.',
]


def _finish(lines: List[str], contexts, rules: str) -> str:
    if rules:
        lines += ["", "PROJECT RULES (agent.md):", rules]
    block = build_context_block(contexts)
    if block:
        lines += ["", "CONTEXT:", block]
    return "\n".join(lines)


def build_chat_system_prompt(contexts: Optional[List[Dict[str, Any]]] = None, rules: str = "") -> str:
    """Chat mode: answer questions, inspect but never modify the workspace."""
    lines = [
        "You are a helpful coding assistant.",
        "Answer the user clearly and directly.",
        "Use the provided context when relevant.",
        "Do not perform a code review unless the user explicitly asks.",
        "",
        "You can use tools to inspect but not modify the workspace. Respond with JSON only.",
        "When the user mentions a file name or extension (e.g., about.md), use locate_file and do not call search.",
        "Tool schema:",
        *tool_schema_lines(include_mutating=False),
        *_PROTOCOL_FOOTER,
    ]
    return _finish(lines, contexts, rules)


def build_agent_system_prompt(contexts: Optional[List[Dict[str, Any]]] = None, rules: str = "") -> str:
    """Agent mode: plan with a TODO list and act through every tool."""
    lines = [
        "You are a coding agent.",
        "Provide a concise plan and actionable steps.",
        "If you propose code changes, include file paths and minimal patches or snippets.",
        "Ask a clarifying question if required.",
        "Do not perform a code review unless the user explicitly asks.",
        "",
        "You can use tools to inspect and modify the workspace. Respond with JSON only.",
        "Prefer non-interactive commands (use flags like --yes). Keep commands scoped to the workspace.",
        "After making changes, verify the workspace state (a tree and file list may be provided) "
        "before returning the final response.",
        "If workspace problems are provided, attempt to resolve them before finishing when possible.",
        'Maintain a TODO list in your JSON responses using '
        '{"todo":[{"id":"1","text":"...","status":"pending|done"}]}. Update statuses as you complete steps.',
        "When using edit_file or replace_range, set newText to ONLY the replacement lines for the specified range.",
        "Do not include unchanged context lines before/after the range, "
        "and do not re-emit entire functions/files for small edits.",
        "Avoid duplicate imports; when adding an import, insert only the new line.",
        "When the user mentions a file name or extension (e.g., about.md), use locate_file and do not call search.",
        "Tool schema:",
        *tool_schema_lines(include_mutating=True),
        *_PROTOCOL_FOOTER,
    ]
    return _finish(lines, contexts, rules)


def get_system_prompt(mode: str, workspace_path=None,
                      contexts: Optional[List[Dict[str, Any]]] = None) -> str:
    rules = load_agent_rules(workspace_path) if workspace_path else ""
    if mode == "agent":
        return build_agent_system_prompt(contexts, rules)
    return build_chat_system_prompt(contexts, rules)


def validate_examples() -> List[str]:
    """Names of tools whose prompt example is not a JSON object."""
    bad = []
    for tool in TOOL_DEFS:
        try:
            if not isinstance(json.loads(tool.example), dict):
                bad.append(tool.name)
        except ValueError:
            bad.append(tool.name)
    return bad
