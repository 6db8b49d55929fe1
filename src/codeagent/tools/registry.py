"""Tool registry: maps each tool name to its handler."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from ..approval import ApprovalGate
from ..editor import CallHierarchyItem, EditorBridge, NullEditorBridge
from ..errors import ToolRegistryError
from ..logger import OutputBuffer, get_logger, get_output_buffer
from ..revert import FileSnapshot, RevertLedger, format_revert_tag
from ..tool_registry import TOOL_NAMES, ToolMetrics
from ..workspace import Workspace

log = get_logger("tools")

Handler = Callable[["ToolContext", Dict[str, Any]], Awaitable[str]]


# ── Argument helpers ─────────────────────────────────────────────
# Models send numbers as strings, floats or not at all.

def arg_int(args: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    value = args.get(key)
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def arg_str(args: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = args.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class ToolContext:
    """Everything a handler may touch. One per session."""

    workspace: Workspace
    gate: ApprovalGate
    ledger: RevertLedger
    editor: EditorBridge = field(default_factory=NullEditorBridge)
    output: OutputBuffer = field(default_factory=get_output_buffer)
    call_hierarchy: Dict[str, CallHierarchyItem] = field(default_factory=dict)

    async def confirm(self, title: str, details: List[str],
                      approve_label: str = "Approve", cancel_label: str = "Cancel") -> bool:
        return await self.gate.request_approval(title, details, approve_label, cancel_label)

    def commit_revert(self, snapshots: Iterable[FileSnapshot]) -> str:
        """Register pre-change snapshots and return the ``[[revert:<id>]]`` suffix."""
        return format_revert_tag(self.ledger.register(snapshots))


class ToolResult(BaseModel):
    """Result of a tool execution."""

    tool: str
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    unknown: bool = False

    def to_message(self) -> str:
        """Convert result to the text fed back into the transcript."""
        if self.unknown:
            return f"Unknown tool: {self.tool}"
        if self.success:
            return self.output or ""
        return f"Tool failed: {self.error}"


@dataclass
class Tool:
    """A named handler."""

    name: str
    function: Handler

    async def execute(self, ctx: ToolContext, args: Dict[str, Any]) -> ToolResult:
        try:
            output = await self.function(ctx, args)
            return ToolResult(tool=self.name, success=True, output=str(output or ""))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Tool %s raised", self.name)
            return ToolResult(tool=self.name, success=False, error=str(e) or type(e).__name__)


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}
        self.metrics = ToolMetrics()

    def register(self, name: str, function: Handler) -> None:
        self._tools[name] = Tool(name=name, function=function)

    def register_all(self, handlers: Dict[str, Handler]) -> None:
        for name, function in handlers.items():
            self.register(name, function)

    def validate(self, expected: Iterable[str] = TOOL_NAMES) -> None:
        """Fail fast when the handler table and the tool name space disagree."""
        expected = set(expected)
        missing = sorted(expected - set(self._tools))
        unknown = sorted(set(self._tools) - expected)
        if missing or unknown:
            raise ToolRegistryError(
                f"tool registry mismatch: missing handlers {missing}, unknown handlers {unknown}"
            )

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    async def execute(self, ctx: ToolContext, name: str, args: Dict[str, Any]) -> ToolResult:
        tool = self.get(name)
        if tool is None:
            return ToolResult(tool=name, success=False, unknown=True)
        t0 = time.time()
        result = await tool.execute(ctx, args)
        self.metrics.record(
            name, (time.time() - t0) * 1000, result.success,
            error=result.error, result_size=len(result.output or ""),
        )
        return result


def build_default_registry() -> ToolRegistry:
    """Registry with every built-in handler, validated against the tool name space."""
    from . import editor_tools, file_tools, search_tools, shell_tools

    registry = ToolRegistry()
    for module in (search_tools, file_tools, editor_tools, shell_tools):
        registry.register_all(module.HANDLERS)
    registry.validate()
    return registry
