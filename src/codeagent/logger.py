"""Centralized observability logger for the agent.

Writes a structured, always-on log to .codeagent/codeagent.log inside
the workspace. Every model request, tool execution and approval decision
is logged so a turn can be reconstructed after the fact.

Usage in any module:
    from .logger import get_logger
    log = get_logger("tools")
    log.info("something happened")

The log file rotates at 5 MB and keeps the last 5 files. An in-memory
OutputBuffer handler keeps the newest 200 000 characters of formatted
output so the read_output tool can show them to the model.
"""

import logging
import os
import sys
import traceback
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Deque, Optional, Tuple

OUTPUT_BUFFER_LIMIT = 200_000

# ── Singleton state ──────────────────────────────────────────

_initialized = False
_log_dir: Optional[Path] = None
_output_buffer: Optional["OutputBuffer"] = None

_FORMAT = logging.Formatter(
    fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class OutputBuffer(logging.Handler):
    """Bounded in-memory copy of the log output.

    Chunks are evicted oldest first once the total size passes ``limit``.
    """

    def __init__(self, limit: int = OUTPUT_BUFFER_LIMIT, level: int = logging.INFO):
        super().__init__(level)
        self.limit = limit
        self._chunks: Deque[str] = deque()
        self._size = 0

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.append(self.format(record) + "\n")
        except Exception:
            self.handleError(record)

    def append(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        self._size += len(text)
        while self._size > self.limit and self._chunks:
            removed = self._chunks.popleft()
            self._size -= len(removed)

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0

    @property
    def size(self) -> int:
        return self._size

    def read(self, max_chars: int, tail: bool = True) -> Tuple[str, int, bool]:
        """Return (text, total, truncated) for the head or tail of the buffer."""
        full = "".join(self._chunks)
        total = len(full)
        if total <= max_chars:
            return full, total, False
        if tail:
            return full[-max_chars:], total, True
        return full[:max_chars], total, True


def get_output_buffer() -> OutputBuffer:
    """Return the process-wide output buffer, creating it if needed."""
    global _output_buffer
    if _output_buffer is None:
        _output_buffer = OutputBuffer()
        _output_buffer.setFormatter(_FORMAT)
    return _output_buffer


def _ensure_log_dir() -> Path:
    """Return (and create) the log directory."""
    global _log_dir
    if _log_dir is not None:
        return _log_dir
    _log_dir = Path.cwd() / ".codeagent"
    _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def init_logging(workspace: Optional[str] = None, level: int = logging.DEBUG) -> None:
    """Initialise the file logger.  Safe to call more than once."""
    global _initialized, _log_dir

    if workspace:
        _log_dir = Path(workspace) / ".codeagent"
        _log_dir.mkdir(parents=True, exist_ok=True)
    else:
        _ensure_log_dir()

    if _initialized:
        return
    _initialized = True

    root = logging.getLogger("codeagent")
    root.setLevel(level)
    root.propagate = False

    # Avoid duplicate handlers if init is called twice
    if root.handlers:
        return

    log_path = _log_dir / "codeagent.log"

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,   # 5 MB per file
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_FORMAT)
    root.addHandler(handler)
    root.addHandler(get_output_buffer())

    # Mirror to stderr when CODEAGENT_DEBUG is set
    if os.environ.get("CODEAGENT_DEBUG"):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(_FORMAT)
        root.addHandler(stderr_handler)

    root.info(
        "=== Logging initialised === pid=%d python=%s log=%s",
        os.getpid(),
        sys.version.split()[0],
        log_path,
    )


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the 'codeagent' namespace.

    Automatically initialises logging on first call so that even
    imports before init_logging() still get a working logger.
    """
    if not _initialized:
        init_logging()
    return logging.getLogger(f"codeagent.{name}")


# ── Convenience helpers ──────────────────────────────────────

def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """Truncate a string for log readability."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
