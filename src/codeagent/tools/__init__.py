"""Tool handlers and the registry that maps tool names to them."""

from .registry import Tool, ToolContext, ToolRegistry, ToolResult, build_default_registry

__all__ = [
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
]
