"""Todo list tracking for multi-step agent turns.

The model maintains a checklist in its JSON replies (``{"todo": [...]}``).
Each reply is merged into the current list rather than replacing it: an
item that was ever marked done stays done, and done items the model
forgot to resend are kept at the end.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

_TODO_CUE_RE = re.compile(r"todo|to[-\s]?do|task list|checklist|plan", re.IGNORECASE)
_NUMBERED_LINE_RE = re.compile(r"^(\d+)[\).]\s+(.*)$")


class TodoStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


@dataclass
class TodoItem:
    """A single todo item."""
    id: str
    text: str
    status: TodoStatus = TodoStatus.PENDING

    @property
    def done(self) -> bool:
        return self.status is TodoStatus.DONE

    def to_dict(self) -> dict:
        return {"id": self.id, "text": self.text, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: dict) -> "TodoItem":
        return cls(
            id=str(data["id"]),
            text=str(data["text"]),
            status=TodoStatus(data.get("status", "pending")),
        )

    def format_short(self) -> str:
        """One-line summary."""
        icon = "●" if self.done else "○"
        return f"[{self.id}] {icon} {self.text} ({self.status.value})"


def normalize_todo_item(item: Any, index: int) -> Optional[TodoItem]:
    """Coerce one raw model entry into a TodoItem, or None if it has no text."""
    if not isinstance(item, dict):
        text = str(item if item is not None else "").strip()
        if not text:
            return None
        return TodoItem(id=f"todo_{index + 1}", text=text)
    text = str(item.get("text") or item.get("title") or item.get("description") or "").strip()
    if not text:
        return None
    status_raw = str(item.get("status") or "").lower()
    status = TodoStatus.DONE if status_raw in ("done", "complete") else TodoStatus.PENDING
    raw_id = item.get("id")
    item_id = str(raw_id) if raw_id not in (None, "") else f"todo_{index + 1}"
    return TodoItem(id=item_id, text=text, status=status)


def normalize_todo_list(raw: Any) -> List[TodoItem]:
    if not isinstance(raw, list):
        return []
    items = []
    for index, entry in enumerate(raw):
        if isinstance(entry, TodoItem):
            items.append(entry)
            continue
        normalized = normalize_todo_item(entry, index)
        if normalized is not None:
            items.append(normalized)
    return items


def merge_todo_lists(current: List[TodoItem], incoming: List[TodoItem]) -> List[TodoItem]:
    """Merge an incoming list into the current one.

    Matching is by id, falling back to case-insensitive text. A match is
    done if either side is done. Done items missing from ``incoming`` are
    appended. An empty ``incoming`` leaves the current list unchanged.
    """
    if not incoming:
        return list(current)
    by_id = {item.id: item for item in current}
    by_text = {item.text.lower(): item for item in current}

    merged: List[TodoItem] = []
    for item in incoming:
        existing = by_id.get(item.id) or by_text.get(item.text.lower())
        status = item.status
        if existing is not None and (existing.done or item.done):
            status = TodoStatus.DONE
        merged.append(TodoItem(id=item.id, text=item.text, status=status))

    for item in current:
        if not item.done:
            continue
        present = any(m.id == item.id or m.text.lower() == item.text.lower() for m in merged)
        if not present:
            merged.append(TodoItem(id=item.id, text=item.text, status=item.status))
    return merged


def pending_todos(items: List[TodoItem]) -> List[TodoItem]:
    return [item for item in items if not item.done]


def build_planner_instruction(items: List[TodoItem]) -> str:
    """Synthetic user message naming the single next pending item, or ""."""
    pending = pending_todos(items)
    if not pending:
        return ""
    listing = "\n".join(
        f"{idx + 1}. [{item.status.value}] {item.text}" for idx, item in enumerate(items)
    )
    return "\n".join([
        "You are executing a TODO plan. Focus on ONE pending item at a time.",
        "Current TODOs:",
        listing,
        "",
        f"Next item to execute: {pending[0].text}",
        'Work on the next item only, then return updated {"todo":[...]} with statuses.',
        "Do not repeat the TODO list without taking action; use tools to make progress.",
    ])


def todo_signature(items: List[TodoItem]) -> str:
    return json.dumps([item.to_dict() for item in items], sort_keys=True)


def extract_todo_seed(text: str) -> Optional[List[str]]:
    """Numbered lines of a prompt that asks for a plan/checklist."""
    src = (text or "").strip()
    if not src or not _TODO_CUE_RE.search(src):
        return None
    items = []
    for line in src.splitlines():
        match = _NUMBERED_LINE_RE.match(line.strip())
        if match and match.group(2).strip():
            items.append(match.group(2).strip())
    return items or None


def seed_todos_from_prompt(text: str) -> Optional[List[TodoItem]]:
    items = extract_todo_seed(text)
    if not items:
        return None
    return [TodoItem(id=f"todo_{index + 1}", text=item) for index, item in enumerate(items)]


class TodoList:
    """The todo state of one conversation thread."""

    def __init__(self, items: Optional[List[TodoItem]] = None):
        self._items: List[TodoItem] = list(items or [])

    @property
    def items(self) -> List[TodoItem]:
        return list(self._items)

    def apply_update(self, incoming: List[TodoItem]) -> List[TodoItem]:
        self._items = merge_todo_lists(self._items, incoming)
        return self.items

    def replace(self, items: List[TodoItem]) -> None:
        self._items = list(items)

    def clear(self) -> None:
        self._items = []

    def pending(self) -> List[TodoItem]:
        return pending_todos(self._items)

    def has_pending(self) -> bool:
        return bool(self.pending())

    def planner_instruction(self) -> str:
        return build_planner_instruction(self._items)

    def format_list(self) -> str:
        if not self._items:
            return "No todos."
        return "\n".join(item.format_short() for item in self._items)

    def to_dict(self) -> List[Dict[str, str]]:
        return [item.to_dict() for item in self._items]

    @classmethod
    def from_dict(cls, data: Any) -> "TodoList":
        return cls(normalize_todo_list(data))

    def __len__(self) -> int:
        return len(self._items)
