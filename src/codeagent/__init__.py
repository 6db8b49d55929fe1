"""LLM coding agent with approval-gated, revertible workspace tools."""

__version__ = "0.1.0"

from .agent_loop import AgentLoop, LoopState, TurnOutcome
from .config import Config
from .controller import ChatController
from .diff_engine import unified_diff
from .parser import ParsedTurn, ToolCall, TurnKind, parse_response
from .prompts import get_system_prompt
from .revert import RevertLedger
from .session import AgentSession, Mode
from .storage import MemoryThreadStore, SqliteThreadStore, ThreadStore, open_thread_store
from .todo import TodoItem, TodoList, TodoStatus

__all__ = [
    "AgentLoop",
    "LoopState",
    "TurnOutcome",
    "Config",
    "ChatController",
    "unified_diff",
    "ParsedTurn",
    "ToolCall",
    "TurnKind",
    "parse_response",
    "get_system_prompt",
    "RevertLedger",
    "AgentSession",
    "Mode",
    "MemoryThreadStore",
    "SqliteThreadStore",
    "ThreadStore",
    "open_thread_store",
    "TodoItem",
    "TodoList",
    "TodoStatus",
]
