"""Workspace root: path confinement, relative paths, glob matching and file walking."""

import fnmatch
import os
import re
from pathlib import Path
from typing import Iterator, List, Optional

ALWAYS_SKIP_DIRS = {".git", ".codeagent"}
DEFAULT_INCLUDE = "**/*"
DEFAULT_EXCLUDE = "**/node_modules/**"

_GLOB_META_RE = re.compile(r"[?*{}\[\]]")


def normalize_glob_pattern(pattern: Optional[str], fallback: str) -> str:
    """Turn loose model input ("src", "*", "node_modules") into a usable glob."""
    raw = str(pattern or "").strip()
    if not raw:
        return fallback
    if raw in ("*", "*/", "/*"):
        return "**/*"
    trimmed = raw.strip("/")
    if trimmed == "node_modules":
        return "**/node_modules/**"
    if _GLOB_META_RE.search(raw):
        return raw
    last_segment = re.split(r"[\\/]", trimmed)[-1] if trimmed else ""
    if not last_segment or "." in last_segment:
        return raw
    return f"{trimmed}/**/*"


_BRACE_RE = re.compile(r"\{([^{}]*)\}")


def expand_braces(pattern: str) -> List[str]:
    """``src/*.{js,ts}`` -> ``["src/*.js", "src/*.ts"]``."""
    match = _BRACE_RE.search(pattern)
    if not match:
        return [pattern]
    expanded = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(pattern[:match.start()] + option + pattern[match.end():]))
    return expanded


def _match_segments(pattern: List[str], parts: List[str]) -> bool:
    if not pattern:
        return not parts
    head = pattern[0]
    if head == "**":
        return any(_match_segments(pattern[1:], parts[i:]) for i in range(len(parts) + 1))
    return bool(parts) and fnmatch.fnmatch(parts[0], head) and _match_segments(pattern[1:], parts[1:])


def glob_match(pattern: str, rel_path: str) -> bool:
    """Match a workspace-relative posix path; ``**`` spans any number of directories."""
    parts = [p for p in rel_path.split("/") if p]
    return any(
        _match_segments([s for s in option.split("/") if s], parts)
        for option in expand_braces(pattern)
    )


class Workspace:
    """A project root that every tool path is resolved against."""

    def __init__(self, root):
        self.root = Path(root).resolve()

    def resolve(self, raw: Optional[str]) -> Optional[Path]:
        """Absolute path for ``raw`` inside the workspace, or None if empty/outside."""
        text = str(raw or "").strip()
        if not text:
            return None
        candidate = Path(text)
        full = candidate if candidate.is_absolute() else self.root / candidate
        full = Path(os.path.normpath(str(full)))
        try:
            full.relative_to(self.root)
        except ValueError:
            return None
        return full

    def relpath(self, full) -> str:
        full = Path(full)
        try:
            rel = full.relative_to(self.root)
        except ValueError:
            return str(full)
        text = rel.as_posix()
        return text if text != "." else ""

    def iter_files(
        self,
        include: str = DEFAULT_INCLUDE,
        exclude: Optional[str] = DEFAULT_EXCLUDE,
        limit: Optional[int] = None,
    ) -> Iterator[Path]:
        """Walk files in sorted order, filtered by include/exclude globs."""
        include = include or DEFAULT_INCLUDE
        prune_dirs = bool(exclude) and exclude.endswith("/**")
        count = 0
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = self.relpath(Path(dirpath))
            kept = []
            for name in sorted(dirnames):
                if name in ALWAYS_SKIP_DIRS:
                    continue
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if prune_dirs and glob_match(exclude, rel):
                    continue
                kept.append(name)
            dirnames[:] = kept
            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not glob_match(include, rel):
                    continue
                if exclude and glob_match(exclude, rel):
                    continue
                yield Path(dirpath) / name
                count += 1
                if limit is not None and count >= limit:
                    return

    def list_files(self, include: str = DEFAULT_INCLUDE, exclude: Optional[str] = DEFAULT_EXCLUDE,
                   limit: Optional[int] = None) -> List[str]:
        return [self.relpath(p) for p in self.iter_files(include, exclude, limit)]
