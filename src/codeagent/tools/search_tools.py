"""Search and exploration tools: text search, file lookup, listings, tree, output tail."""

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import aiofiles

from ..workspace import DEFAULT_EXCLUDE, DEFAULT_INCLUDE, normalize_glob_pattern
from .registry import ToolContext, arg_int, arg_str, clamp

READ_DIR_EXCLUDES = ["node_modules", ".git", ".vscode", ".DS_Store"]
LOCATE_SCAN_LIMIT = 5000

_WHITESPACE_RE = re.compile(r"\s")
_EXTENSION_RE = re.compile(r"\.[a-z0-9]{1,6}$", re.IGNORECASE)


def is_likely_file_query(query: str) -> bool:
    """A bare path or file name: no whitespace, and a separator or an extension."""
    raw = (query or "").strip()
    if not raw or _WHITESPACE_RE.search(raw):
        return False
    if "/" in raw or "\\" in raw:
        return True
    return bool(_EXTENSION_RE.search(raw))


async def _read_text_file(path: Path) -> str:
    """Decoded contents, or "" for binary files."""
    async with aiofiles.open(path, "rb") as f:
        data = await f.read()
    if b"\x00" in data[:8192]:
        return ""
    return data.decode("utf-8", errors="replace")


async def search(ctx: ToolContext, args: Dict[str, Any]) -> str:
    query = arg_str(args, "query")
    if not query:
        return "Search failed: query is required."
    if is_likely_file_query(query):
        result = await locate_file(ctx, {
            "query": query,
            "include": args.get("include"),
            "exclude": args.get("exclude"),
            "maxResults": args.get("maxResults"),
        })
        return f'Search redirected to locate_file for "{query}".\n{result}'

    include = normalize_glob_pattern(args.get("include"), DEFAULT_INCLUDE)
    exclude = normalize_glob_pattern(args.get("exclude"), DEFAULT_EXCLUDE)
    max_results = clamp(arg_int(args, "maxResults") or 20, 1, 100)

    needle = query.lower()
    results: List[str] = []
    for path in ctx.workspace.iter_files(include, exclude):
        try:
            text = await _read_text_file(path)
        except OSError:
            continue
        rel = ctx.workspace.relpath(path)
        for lineno, line in enumerate(text.splitlines(), 1):
            if needle in line.lower():
                results.append(f"{rel}:{lineno} | {line.strip()}")
                if len(results) >= max_results:
                    break
        if len(results) >= max_results:
            break

    if not results:
        return "Search results: no matches."
    return f"Search results ({len(results)}):\n" + "\n".join(results)


async def locate_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    query = arg_str(args, "query", "name")
    if not query:
        return "Locate file failed: query is required."
    max_results = clamp(arg_int(args, "maxResults") or 20, 1, 200)
    include = normalize_glob_pattern(args.get("include"), DEFAULT_INCLUDE)
    exclude = normalize_glob_pattern(args.get("exclude"), DEFAULT_EXCLUDE)
    patterns = args.get("patterns")
    patterns = [str(p).lower() for p in patterns] if isinstance(patterns, list) else []

    files = list(ctx.workspace.iter_files(include, exclude, limit=LOCATE_SCAN_LIMIT))
    if not files:
        return "Locate file: workspace is empty."

    needle = query.lower()
    candidates = []
    for path in files:
        rel = ctx.workspace.relpath(path)
        rel_lower = rel.lower()
        base = os.path.basename(rel).lower()
        score = 0
        if base == needle:
            score += 100
        if base.startswith(needle):
            score += 60
        if needle in base:
            score += 40
        if needle in rel_lower:
            score += 20
        if patterns and any(p in rel_lower for p in patterns):
            score += 10
        if score > 0:
            candidates.append((score, rel))

    if not candidates:
        return f'Locate file: no matches for "{query}".'
    candidates.sort(key=lambda c: (-c[0], c[1]))
    top = [rel for _, rel in candidates[:max_results]]
    return f"Locate file ({len(top)}):\n" + "\n".join(top)


async def list_files(ctx: ToolContext, args: Dict[str, Any]) -> str:
    include = normalize_glob_pattern(args.get("include"), DEFAULT_INCLUDE)
    exclude = normalize_glob_pattern(args.get("exclude"), DEFAULT_EXCLUDE)
    max_results = clamp(arg_int(args, "maxResults") or 200, 1, 1000)
    rels = ctx.workspace.list_files(include, exclude, limit=max_results)
    if not rels:
        return "Files: no matches."
    return f"Files ({len(rels)}):\n" + "\n".join(rels)


async def file_stat(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "File stat failed: invalid or out-of-workspace path."
    rel = ctx.workspace.relpath(full)
    try:
        st = os.stat(full)
    except FileNotFoundError:
        return f"File stat for {rel}:\n- exists: false"
    except OSError as e:
        return f"File stat failed: {e}"
    if full.is_dir():
        kind = "directory"
    elif full.is_file():
        kind = "file"
    else:
        kind = "other"
    mtime = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
    return "\n".join([
        f"File stat for {rel}:",
        "- exists: true",
        f"- type: {kind}",
        f"- size: {st.st_size}",
        f"- mtime: {mtime.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}",
    ])


async def read_dir(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(arg_str(args, "path") or ".")
    if full is None:
        return "Read dir failed: invalid or out-of-workspace path."
    max_depth = clamp(arg_int(args, "maxDepth") or 3, 0, 10)
    max_entries = clamp(arg_int(args, "maxEntries") or 400, 20, 2000)
    exclude = args.get("exclude")
    exclude = [str(v) for v in exclude] if isinstance(exclude, list) else list(READ_DIR_EXCLUDES)

    lines: List[str] = []
    truncated = False

    def walk(directory: Path, depth: int, prefix: str) -> None:
        nonlocal truncated
        if len(lines) >= max_entries:
            truncated = True
            return
        try:
            entries = [e for e in os.scandir(directory) if e.name not in exclude]
        except OSError:
            return
        entries.sort(key=lambda e: (not e.is_dir(), e.name.lower(), e.name))
        for index, entry in enumerate(entries):
            if len(lines) >= max_entries:
                truncated = True
                return
            last = index == len(entries) - 1
            is_dir = entry.is_dir()
            pointer = "└──" if last else "├──"
            lines.append(f"{prefix}{pointer} {entry.name}{'/' if is_dir else ''}")
            if is_dir and depth > 0:
                walk(Path(entry.path), depth - 1, prefix + ("    " if last else "│   "))

    if not full.exists():
        return f"Read dir failed: {ctx.workspace.relpath(full) or '.'} not found."
    if not full.is_dir():
        return f"Read dir failed: {ctx.workspace.relpath(full)} is not a directory."
    rel = ctx.workspace.relpath(full) or "."
    walk(full, max_depth, "")
    body = "\n".join(lines) if lines else "(empty)"
    tail = "\n...[truncated]" if truncated else ""
    return f"Tree for {rel} (depth {max_depth}):\n{body}{tail}"


async def read_output(ctx: ToolContext, args: Dict[str, Any]) -> str:
    max_chars = clamp(arg_int(args, "maxChars") or 12000, 200, 50000)
    tail = args.get("tail") is not False
    text, total, truncated = ctx.output.read(max_chars, tail=tail)
    if not text:
        return "Output is empty."
    if truncated:
        scope = "tail" if tail else "head"
        return f"Output ({scope}, {len(text)} chars of {total}):\n{text}"
    return f"Output ({total} chars):\n{text}"


HANDLERS = {
    "search": search,
    "locate_file": locate_file,
    "list_files": list_files,
    "file_stat": file_stat,
    "read_dir": read_dir,
    "read_output": read_output,
}
