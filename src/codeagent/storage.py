"""Thread storage: conversation threads, their messages, todos and pinned context.

Two implementations share the ``ThreadStore`` interface. ``open_thread_store``
tries to open a SQLite database once at startup and falls back to the
in-memory store, so nothing above this module ever checks which one it got.
"""

import itertools
import json
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logger import get_logger

log = get_logger("storage")

TITLE_MAX_CHARS = 60


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_thread_title() -> str:
    return "Chat " + datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def is_default_title(title: str) -> bool:
    trimmed = (title or "").strip()
    return trimmed == "Chat" or trimmed.startswith("Chat ")


def title_from_message(message: str) -> str:
    candidate = (message or "").strip()
    if len(candidate) > TITLE_MAX_CHARS:
        return candidate[:TITLE_MAX_CHARS - 3] + "..."
    return candidate


def normalize_thread_id(value: Any) -> Optional[str]:
    try:
        num = int(float(str(value).strip()))
    except (TypeError, ValueError):
        return None
    return str(num) if num > 0 else None


def _loads(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        log.warning("Ignoring corrupt JSON column: %.80s", raw)
        return default


@dataclass
class ThreadRecord:
    id: str
    title: str
    created_at: str = ""
    updated_at: str = ""
    todos: List[Dict[str, Any]] = field(default_factory=list)
    contexts: List[Dict[str, Any]] = field(default_factory=list)


class ThreadStore(ABC):
    """Storage capability used by the controller."""

    persistent = False

    @abstractmethod
    def create_thread(self, title: Optional[str] = None, contexts: Optional[list] = None,
                      todos: Optional[list] = None) -> str:
        ...

    @abstractmethod
    def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        ...

    @abstractmethod
    def list_threads(self) -> List[ThreadRecord]:
        """Most recently updated first."""

    @abstractmethod
    def load_messages(self, thread_id: str) -> List[Dict[str, str]]:
        ...

    @abstractmethod
    def add_message(self, thread_id: str, role: str, content: str) -> None:
        ...

    @abstractmethod
    def clear_messages(self, thread_id: str) -> None:
        ...

    @abstractmethod
    def update_todos(self, thread_id: str, todos: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    def update_contexts(self, thread_id: str, contexts: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    def set_title(self, thread_id: str, title: str) -> None:
        ...

    @abstractmethod
    def touch(self, thread_id: str) -> None:
        ...

    def update_title_from_message(self, thread_id: str, message: str) -> bool:
        """Replace a default title with the first user message."""
        record = self.get_thread(thread_id)
        title = title_from_message(message)
        if record is None or not title or not is_default_title(record.title):
            return False
        self.set_title(thread_id, title)
        return True

    def close(self) -> None:
        pass


# ── In-memory ────────────────────────────────────────────────────

class MemoryThreadStore(ThreadStore):
    """Process-lifetime storage; used when SQLite is unavailable."""

    def __init__(self):
        self._threads: Dict[str, ThreadRecord] = {}
        self._messages: Dict[str, List[Dict[str, str]]] = {}
        self._ids = itertools.count(1)
        self._order = itertools.count(1)
        self._touched: Dict[str, int] = {}

    def create_thread(self, title=None, contexts=None, todos=None) -> str:
        thread_id = str(next(self._ids))
        now = _now_iso()
        self._threads[thread_id] = ThreadRecord(
            id=thread_id,
            title=(title or "").strip() or default_thread_title(),
            created_at=now,
            updated_at=now,
            todos=list(todos or []),
            contexts=list(contexts or []),
        )
        self._messages[thread_id] = []
        self._touched[thread_id] = next(self._order)
        return thread_id

    def get_thread(self, thread_id):
        return self._threads.get(normalize_thread_id(thread_id) or "")

    def list_threads(self):
        return sorted(self._threads.values(), key=lambda t: self._touched[t.id], reverse=True)

    def load_messages(self, thread_id):
        return [dict(m) for m in self._messages.get(normalize_thread_id(thread_id) or "", [])]

    def add_message(self, thread_id, role, content):
        key = normalize_thread_id(thread_id)
        if key in self._messages:
            self._messages[key].append({"role": role, "content": str(content or "")})

    def clear_messages(self, thread_id):
        key = normalize_thread_id(thread_id)
        if key in self._messages:
            self._messages[key] = []

    def update_todos(self, thread_id, todos):
        record = self.get_thread(thread_id)
        if record:
            record.todos = list(todos or [])

    def update_contexts(self, thread_id, contexts):
        record = self.get_thread(thread_id)
        if record:
            record.contexts = list(contexts or [])

    def set_title(self, thread_id, title):
        record = self.get_thread(thread_id)
        if record:
            record.title = title

    def touch(self, thread_id):
        record = self.get_thread(thread_id)
        if record:
            record.updated_at = _now_iso()
            self._touched[record.id] = next(self._order)


# ── SQLite ───────────────────────────────────────────────────────

_SCHEMA = [
    "PRAGMA foreign_keys = ON",
    """CREATE TABLE IF NOT EXISTS chat_threads (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        context_json TEXT,
        todo_json TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS chat_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        thread_id INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(thread_id) REFERENCES chat_threads(id) ON DELETE CASCADE
    )""",
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_thread_id ON chat_messages(thread_id)",
]


class SqliteThreadStore(ThreadStore):
    """Threads persisted in a SQLite file (``<workspace>/.codeagent/chat.db`` by default)."""

    persistent = True

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)
        self._migrate()

    def _migrate(self) -> None:
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info('chat_threads')")}
        if "todo_json" not in columns:
            with self._conn:
                self._conn.execute("ALTER TABLE chat_threads ADD COLUMN todo_json TEXT")

    def _exec(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._conn:
            return self._conn.execute(sql, params)

    def create_thread(self, title=None, contexts=None, todos=None) -> str:
        now = _now_iso()
        cur = self._exec(
            "INSERT INTO chat_threads (title, context_json, todo_json, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                (title or "").strip() or default_thread_title(),
                json.dumps(contexts) if contexts else None,
                json.dumps(todos) if todos else None,
                now,
                now,
            ),
        )
        return str(cur.lastrowid)

    def _record(self, row: sqlite3.Row) -> ThreadRecord:
        return ThreadRecord(
            id=str(row["id"]),
            title=row["title"] or default_thread_title(),
            created_at=row["created_at"] or "",
            updated_at=row["updated_at"] or "",
            todos=_loads(row["todo_json"], []),
            contexts=_loads(row["context_json"], []),
        )

    def get_thread(self, thread_id):
        key = normalize_thread_id(thread_id)
        if not key:
            return None
        row = self._conn.execute("SELECT * FROM chat_threads WHERE id = ?", (key,)).fetchone()
        return self._record(row) if row else None

    def list_threads(self):
        rows = self._conn.execute(
            "SELECT * FROM chat_threads ORDER BY datetime(updated_at) DESC, updated_at DESC, id DESC"
        ).fetchall()
        return [self._record(row) for row in rows]

    def load_messages(self, thread_id):
        key = normalize_thread_id(thread_id)
        if not key:
            return []
        rows = self._conn.execute(
            "SELECT role, content FROM chat_messages WHERE thread_id = ? ORDER BY id ASC", (key,)
        ).fetchall()
        return [
            {"role": "assistant" if row["role"] == "assistant" else "user", "content": row["content"] or ""}
            for row in rows
        ]

    def add_message(self, thread_id, role, content):
        key = normalize_thread_id(thread_id)
        if key:
            self._exec(
                "INSERT INTO chat_messages (thread_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (key, role, str(content or ""), _now_iso()),
            )

    def clear_messages(self, thread_id):
        key = normalize_thread_id(thread_id)
        if key:
            self._exec("DELETE FROM chat_messages WHERE thread_id = ?", (key,))

    def update_todos(self, thread_id, todos):
        key = normalize_thread_id(thread_id)
        if key:
            self._exec("UPDATE chat_threads SET todo_json = ? WHERE id = ?",
                       (json.dumps(todos) if todos else None, key))

    def update_contexts(self, thread_id, contexts):
        key = normalize_thread_id(thread_id)
        if key:
            self._exec("UPDATE chat_threads SET context_json = ? WHERE id = ?",
                       (json.dumps(contexts) if contexts else None, key))

    def set_title(self, thread_id, title):
        key = normalize_thread_id(thread_id)
        if key:
            self._exec("UPDATE chat_threads SET title = ? WHERE id = ?", (title, key))

    def touch(self, thread_id):
        key = normalize_thread_id(thread_id)
        if key:
            self._exec("UPDATE chat_threads SET updated_at = ? WHERE id = ?", (_now_iso(), key))

    def close(self) -> None:
        self._conn.close()


def open_thread_store(db_path: Optional[Path]) -> ThreadStore:
    """SQLite store when the database can be opened, otherwise in-memory."""
    if db_path is None:
        return MemoryThreadStore()
    try:
        store = SqliteThreadStore(db_path)
    except (sqlite3.Error, OSError) as e:
        log.warning("Thread storage unavailable at %s (%s); history will not persist", db_path, e)
        return MemoryThreadStore()
    log.info("Thread storage: %s", db_path)
    return store
