"""Per-conversation state shared by the agent loop, dispatcher and controller."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .todo import TodoItem, TodoList


class Mode(str, Enum):
    CHAT = "chat"
    AGENT = "agent"

    @classmethod
    def parse(cls, value: Any) -> "Mode":
        return cls.AGENT if str(getattr(value, "value", value)).strip().lower() == "agent" else cls.CHAT


@dataclass
class AgentSession:
    """Everything one active conversation owns.

    Only the single running turn mutates this object. ``ui_messages`` is
    the visible transcript; ``continuation`` holds the model-facing
    transcript saved when a turn hits the step limit.
    """
    thread_id: str = ""
    mode: Mode = Mode.AGENT
    ui_messages: List[Dict[str, str]] = field(default_factory=list)
    todos: TodoList = field(default_factory=TodoList)
    contexts: List[Dict[str, Any]] = field(default_factory=list)
    continuation: Optional[List[Dict[str, str]]] = None
    todo_seed: Optional[List[TodoItem]] = None
    busy: bool = False
    stop_requested: bool = False

    # loop bookkeeping, reset for every turn
    mutation_since_problems: bool = False
    last_command_signature: Optional[str] = None
    saw_mutation_since_command: bool = False

    def reset_turn_flags(self) -> None:
        self.mutation_since_problems = False
        self.last_command_signature = None
        self.saw_mutation_since_command = False

    def set_continuation(self, messages: Optional[List[Dict[str, str]]]) -> None:
        self.continuation = [dict(m) for m in messages] if messages else None

    def append(self, role: str, content: str) -> Dict[str, str]:
        msg = {"role": role, "content": content}
        self.ui_messages.append(msg)
        return msg
