"""Revert ledger: pre-mutation snapshots keyed by change id.

Every mutating tool snapshots the files it is about to touch, commits
its change, then registers the snapshot here and appends
``[[revert:<id>]]`` to its result. The ledger is a bounded ring: once
more than ``max_entries`` changes are registered the oldest is dropped.
"""

import os
import re
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .logger import get_logger

log = get_logger("revert")

MAX_REVERTS = 40

REVERT_TAG_RE = re.compile(r"\[\[revert:([^\]\s]+)\]\]")


@dataclass
class FileSnapshot:
    """Raw bytes of a file before a change; ``existed=False`` means it was absent."""
    path: Path
    existed: bool
    data: bytes = b""

    @classmethod
    def capture(cls, path: Path) -> "FileSnapshot":
        path = Path(path)
        if not path.is_file():
            return cls(path=path, existed=False)
        return cls(path=path, existed=True, data=path.read_bytes())

    @property
    def content(self) -> str:
        """Decoded view for diffs; restores always use ``data``."""
        return self.data.decode("utf-8", errors="replace")


@dataclass
class RevertEntry:
    id: str
    files: List[FileSnapshot] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


def format_revert_tag(change_id: str) -> str:
    safe = (change_id or "").strip()
    return f"\n\n[[revert:{safe}]]" if safe else ""


def extract_revert_ids(text: str) -> List[str]:
    return REVERT_TAG_RE.findall(text or "")


def strip_revert_tags(text: str) -> str:
    return REVERT_TAG_RE.sub("", text or "").rstrip()


class RevertLedger:
    """Bounded map from change id to the snapshots taken before that change."""

    def __init__(self, max_entries: int = MAX_REVERTS, relpath: Optional[Callable[[Path], str]] = None):
        self.max_entries = max(1, max_entries)
        self._relpath = relpath or (lambda p: str(p))
        self._entries: "OrderedDict[str, RevertEntry]" = OrderedDict()

    def register(self, files: Iterable[FileSnapshot]) -> str:
        """Store snapshots and return the new change id ("" if nothing to store)."""
        files = [f for f in files if f is not None]
        if not files:
            return ""
        change_id = f"revert_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        self._entries[change_id] = RevertEntry(id=change_id, files=files)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("Evicted revert entry %s", evicted)
        log.info("Registered revert %s (%d file(s))", change_id, len(files))
        return change_id

    def get(self, change_id: str) -> Optional[RevertEntry]:
        return self._entries.get((change_id or "").strip())

    def __contains__(self, change_id: str) -> bool:
        return (change_id or "").strip() in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def revert(self, change_id: str) -> str:
        """Restore every snapshot of a change and consume the entry.

        Per-file failures are reported in the result and do not stop the
        remaining files from being restored.
        """
        key = (change_id or "").strip()
        if not key:
            return "Revert failed: missing change id."
        entry = self._entries.pop(key, None)
        if entry is None:
            return "Revert failed: change not found or expired."

        results = []
        for snap in entry.files:
            rel = self._relpath(snap.path)
            if not snap.existed:
                try:
                    os.remove(snap.path)
                    results.append(f"Removed {rel}.")
                except OSError as e:
                    results.append(f"Remove failed for {rel}: {e.strerror or e}")
                continue
            try:
                snap.path.parent.mkdir(parents=True, exist_ok=True)
                snap.path.write_bytes(snap.data)
                results.append(f"Restored {rel}.")
            except OSError as e:
                results.append(f"Restore failed for {rel}: {e.strerror or e}")

        log.info("Reverted %s: %s", key, "; ".join(results))
        if not results:
            return "Revert complete."
        return "Revert complete.\n" + "\n".join(results)
