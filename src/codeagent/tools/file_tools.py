"""File tools: reads, line edits, writes, copies, moves, deletes.

Every mutating handler asks for approval first, snapshots the files it is
about to touch, then reports a fenced diff and a ``[[revert:<id>]]`` tag.
"""

import os
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from ..context_management import limit_tool_output
from ..diff_engine import build_diff_block
from ..revert import FileSnapshot
from .registry import ToolContext, arg_int, clamp

_EOL_RE = re.compile(r"\r?\n")


# ── Helpers ──────────────────────────────────────────────────────

async def read_file_text(path: Path) -> str:
    """Read a file verbatim (no newline translation)."""
    async with aiofiles.open(path, "r", encoding="utf-8", errors="replace", newline="") as f:
        return await f.read()


async def write_file_text(path: Path, content: str) -> None:
    """Write a file verbatim, creating parent directories."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        await f.write(content)


async def append_file_text(path: Path, content: str) -> None:
    """Append to a file without re-encoding what is already there."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "a", encoding="utf-8", newline="") as f:
        await f.write(content)


def doc_lines(text: str) -> List[str]:
    """Editor-style lines: "" has one empty line, a trailing newline adds one."""
    return _EOL_RE.split(text)


def line_spans(text: str) -> List[Tuple[int, int]]:
    """(start, end) offsets of each line's content, excluding its line break."""
    spans = []
    pos = 0
    for match in _EOL_RE.finditer(text):
        spans.append((pos, match.start()))
        pos = match.end()
    spans.append((pos, len(text)))
    return spans


def detect_eol(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def position_offset(text: str, line: Any, character: Any) -> Tuple[int, int, int]:
    """Clamp a 1-based (line, character) into the text; returns (offset, line, character)."""
    spans = line_spans(text)
    safe_line = clamp(_to_int(line, 1), 1, len(spans))
    start, end = spans[safe_line - 1]
    safe_char = clamp(_to_int(character, 1), 1, end - start + 1)
    return start + safe_char - 1, safe_line, safe_char


def _to_int(value: Any, default: Optional[int]) -> Optional[int]:
    return arg_int({"v": value}, "v", default)


def _first_int(*values: Any) -> Optional[int]:
    for value in values:
        number = _to_int(value, None)
        if number is not None:
            return number
    return None


def snapshot_tree(path: Path) -> List[FileSnapshot]:
    """Snapshots for a file, or for every file under a directory."""
    if path.is_dir():
        return [
            FileSnapshot.capture(Path(root) / name)
            for root, _dirs, files in os.walk(path)
            for name in sorted(files)
        ]
    return [FileSnapshot.capture(path)]


def _with_diff(message: str, before: str, after: str, revert_tag: str, note: str = "") -> str:
    diff = build_diff_block(before, after)
    suffix = f"\n\n{diff}" if diff else ""
    return f"{message}{suffix}{note}{revert_tag}"


# ── Reads ────────────────────────────────────────────────────────

async def read_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Read failed: invalid or out-of-workspace path."
    max_chars = clamp(arg_int(args, "maxChars") or 12000, 200, 50000)
    start_line = max(1, arg_int(args, "startLine", 1))
    end_line = arg_int(args, "endLine")
    end_line = max(start_line, end_line) if end_line is not None else 0

    try:
        text = await read_file_text(full)
    except FileNotFoundError:
        return f"Read failed: {ctx.workspace.relpath(full)} not found."
    except IsADirectoryError:
        return f"Read failed: {ctx.workspace.relpath(full)} is a directory."
    except OSError as e:
        return f"Read failed: {e}"

    lines = doc_lines(text)
    if not end_line or end_line > len(lines):
        end_line = len(lines)
    if start_line > len(lines):
        return f"Read failed: startLine exceeds file length ({len(lines)})."

    width = len(str(end_line))
    numbered = [
        f"{str(start_line + i).rjust(width)} | {line}"
        for i, line in enumerate(lines[start_line - 1:end_line])
    ]
    return limit_tool_output("\n".join(numbered), max_chars)


async def read_files(ctx: ToolContext, args: Dict[str, Any]) -> str:
    raw_paths = args.get("paths")
    paths = [str(p).strip() for p in raw_paths if str(p or "").strip()] if isinstance(raw_paths, list) else []
    if not paths:
        return "Read files failed: paths[] is required."
    ranges = args.get("ranges") if isinstance(args.get("ranges"), list) else []
    shared = args.get("range") if isinstance(args.get("range"), dict) else None
    max_chars = clamp(arg_int(args, "maxChars") or 12000, 500, 50000)

    chunks = []
    for i, path_text in enumerate(paths):
        rng = ranges[i] if i < len(ranges) and isinstance(ranges[i], dict) else shared
        sub_args: Dict[str, Any] = {"path": path_text, "maxChars": max_chars}
        if rng:
            sub_args["startLine"] = rng.get("startLine")
            sub_args["endLine"] = rng.get("endLine")
        result = await read_file(ctx, sub_args)
        chunks.append(f"File: {path_text}\n{result}")
    return limit_tool_output("\n\n".join(chunks), max_chars)


# ── Line edits ───────────────────────────────────────────────────

def _trim_duplicate_context(before: List[str], after: List[str], new_lines: List[str]) -> Tuple[int, int]:
    """Leading/trailing lines of new_lines that repeat the lines around the range."""
    prefix = 0
    for k in range(min(len(before), len(new_lines)), 0, -1):
        if before[len(before) - k:] == new_lines[:k]:
            prefix = k
            break
    suffix = 0
    for k in range(min(len(after), len(new_lines) - prefix), 0, -1):
        if after[:k] == new_lines[len(new_lines) - k:]:
            suffix = k
            break
    return prefix, suffix


async def edit_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Edit failed: invalid or out-of-workspace path."
    start_line = arg_int(args, "startLine")
    end_line = arg_int(args, "endLine")
    if start_line is None or end_line is None:
        return "Edit failed: startLine and endLine are required numbers."
    if end_line < start_line:
        return "Edit failed: endLine must be >= startLine."
    raw_new_text = str(args.get("newText") or "")

    try:
        before_text = await read_file_text(full)
    except OSError as e:
        return f"Edit failed: {e.strerror or e}"

    lines = doc_lines(before_text)
    spans = line_spans(before_text)
    max_line = max(1, len(lines))
    safe_start = min(max(1, start_line), max_line)
    safe_end = min(max(safe_start, end_line), max_line)

    new_lines = doc_lines(raw_new_text)
    prefix, suffix = _trim_duplicate_context(lines[:safe_start - 1], lines[safe_end:], new_lines)
    new_text = detect_eol(before_text).join(new_lines[prefix:len(new_lines) - suffix])

    rel = ctx.workspace.relpath(full)
    approved = await ctx.confirm(
        "Apply file edit?",
        [f"File: {rel}", f"Lines: {safe_start}-{safe_end}", f"New text length: {len(new_text)}"],
        "Apply", "Cancel",
    )
    if not approved:
        return "Edit canceled by user."

    snapshot = FileSnapshot.capture(full)
    after_text = before_text[:spans[safe_start - 1][0]] + new_text + before_text[spans[safe_end - 1][1]:]
    await write_file_text(full, after_text)

    note = ""
    if prefix or suffix:
        note = (f"\n\nNote: trimmed {prefix} leading and {suffix} trailing line(s) "
                "that duplicated adjacent content.")
    return _with_diff(f"Edit applied to {rel} (lines {safe_start}-{safe_end}).",
                      before_text, after_text, ctx.commit_revert([snapshot]), note)


async def insert_text(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Insert text failed: invalid or out-of-workspace path."
    text = str(args.get("text") or "")
    pos = args.get("position") if isinstance(args.get("position"), dict) else {}
    line = _first_int(pos.get("line"), args.get("line"))
    character = _first_int(pos.get("character"), args.get("character"))
    if line is None or character is None:
        return "Insert text failed: position.line and position.character are required."

    try:
        before_text = await read_file_text(full)
    except OSError as e:
        return f"Insert text failed: {e.strerror or e}"
    offset, safe_line, safe_char = position_offset(before_text, line, character)

    rel = ctx.workspace.relpath(full)
    approved = await ctx.confirm(
        "Insert text?",
        [f"File: {rel}", f"Position: {safe_line}:{safe_char}", f"Text length: {len(text)}"],
        "Insert", "Cancel",
    )
    if not approved:
        return "Insert text canceled by user."

    snapshot = FileSnapshot.capture(full)
    after_text = before_text[:offset] + text + before_text[offset:]
    await write_file_text(full, after_text)
    return _with_diff(f"Inserted text into {rel} at {safe_line}:{safe_char}.",
                      before_text, after_text, ctx.commit_revert([snapshot]))


async def replace_range(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Replace range failed: invalid or out-of-workspace path."
    text = str(args.get("text") or "")
    rng = args.get("range") if isinstance(args.get("range"), dict) else {}
    start_line = _first_int(rng.get("startLine"), args.get("startLine"))
    start_char = _first_int(rng.get("startChar"), rng.get("startCharacter"), args.get("startChar"))
    end_line = _first_int(rng.get("endLine"), args.get("endLine"))
    end_char = _first_int(rng.get("endChar"), rng.get("endCharacter"), args.get("endChar"))
    if None in (start_line, start_char, end_line, end_char):
        return "Replace range failed: range start/end line/char are required."

    try:
        before_text = await read_file_text(full)
    except OSError as e:
        return f"Replace range failed: {e.strerror or e}"
    start, s_line, s_char = position_offset(before_text, start_line, start_char)
    end, e_line, e_char = position_offset(before_text, end_line, end_char)
    if end < start:
        return "Replace range failed: end position must be after start position."

    rel = ctx.workspace.relpath(full)
    approved = await ctx.confirm(
        "Replace range?",
        [f"File: {rel}", f"Range: {s_line}:{s_char}-{e_line}:{e_char}", f"New text length: {len(text)}"],
        "Replace", "Cancel",
    )
    if not approved:
        return "Replace range canceled by user."

    snapshot = FileSnapshot.capture(full)
    after_text = before_text[:start] + text + before_text[end:]
    await write_file_text(full, after_text)
    return _with_diff(f"Replaced range in {rel}.", before_text, after_text, ctx.commit_revert([snapshot]))


# ── Whole-file operations ────────────────────────────────────────

async def write_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Write failed: invalid or out-of-workspace path."
    content = str(args.get("content") or "")
    overwrite = bool(args.get("overwrite"))
    append = bool(args.get("append"))
    rel = ctx.workspace.relpath(full)
    if full.is_dir():
        return f"Write failed: {rel} is a directory."
    exists = full.is_file()

    label = "Append" if append else ("Overwrite" if exists else "Create")
    mode = "append" if append else ("overwrite" if exists else "create")
    if exists and not overwrite and not append:
        return f"Write failed: {rel} already exists (set overwrite=true)."

    approved = await ctx.confirm(
        f"{label} file?",
        [f"File: {rel}", f"Mode: {mode}", f"Content length: {len(content)}"],
        label, "Cancel",
    )
    if not approved:
        return "Write canceled by user."

    snapshot = FileSnapshot.capture(full)
    after_text = snapshot.content + content if append else content
    if append:
        await append_file_text(full, content)
    else:
        await write_file_text(full, after_text)
    tag = ctx.commit_revert([snapshot])
    if append:
        return _with_diff(f"Write appended to {rel}.", snapshot.content, after_text, tag)
    return _with_diff(f"Write succeeded: {rel}.", snapshot.content, after_text, tag)


async def copy_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    src = ctx.workspace.resolve(args.get("from"))
    dst = ctx.workspace.resolve(args.get("to"))
    if src is None or dst is None:
        return "Copy failed: invalid or out-of-workspace path."
    overwrite = bool(args.get("overwrite"))
    rel_from, rel_to = ctx.workspace.relpath(src), ctx.workspace.relpath(dst)
    if not src.exists():
        return f"Copy failed: {rel_from} not found."
    if dst.exists() and not overwrite:
        return f"Copy failed: {rel_to} already exists (set overwrite=true)."

    approved = await ctx.confirm(
        "Copy file?",
        [f"From: {rel_from}", f"To: {rel_to}", f"Overwrite: {str(overwrite).lower()}"],
        "Copy", "Cancel",
    )
    if not approved:
        return "Copy canceled by user."

    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        targets = [dst / p.relative_to(src) for p in (Path(r) / n for r, _d, fs in os.walk(src) for n in fs)]
        snapshots = [FileSnapshot.capture(t) for t in targets]
        shutil.copytree(src, dst, dirs_exist_ok=True)
        return f"Copied {rel_from} → {rel_to}.{ctx.commit_revert(snapshots)}"

    snapshot = FileSnapshot.capture(dst)
    shutil.copyfile(src, dst)
    after_text = await read_file_text(dst)
    return _with_diff(f"Copied {rel_from} → {rel_to}.", snapshot.content, after_text,
                      ctx.commit_revert([snapshot]))


async def move_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    src = ctx.workspace.resolve(args.get("from"))
    dst = ctx.workspace.resolve(args.get("to"))
    if src is None or dst is None:
        return "Move failed: invalid or out-of-workspace path."
    overwrite = bool(args.get("overwrite"))
    rel_from, rel_to = ctx.workspace.relpath(src), ctx.workspace.relpath(dst)
    if not src.exists():
        return f"Move failed: {rel_from} not found."
    if dst.exists() and not overwrite:
        return f"Move failed: {rel_to} already exists (set overwrite=true)."

    approved = await ctx.confirm(
        "Move file?",
        [f"From: {rel_from}", f"To: {rel_to}", f"Overwrite: {str(overwrite).lower()}"],
        "Move", "Cancel",
    )
    if not approved:
        return "Move canceled by user."

    sources = snapshot_tree(src)
    if src.is_dir():
        targets = [FileSnapshot.capture(dst / s.path.relative_to(src)) for s in sources]
    else:
        targets = [FileSnapshot.capture(dst)]
    if dst.exists() and overwrite:
        if dst.is_dir():
            shutil.rmtree(dst)
        else:
            dst.unlink()
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(src), str(dst))
    return f"Moved {rel_from} → {rel_to}.{ctx.commit_revert(targets + sources)}"


async def create_dir(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Create dir failed: invalid or out-of-workspace path."
    rel = ctx.workspace.relpath(full)
    approved = await ctx.confirm("Create directory?", [f"Directory: {rel}"], "Create", "Cancel")
    if not approved:
        return "Create dir canceled by user."
    try:
        full.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return f"Create dir failed: {e.strerror or e}"
    return f"Directory created: {rel}."


async def delete_file(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Delete failed: invalid or out-of-workspace path."
    recursive = bool(args.get("recursive"))
    rel = ctx.workspace.relpath(full)
    if full == ctx.workspace.root:
        return "Delete failed: refusing to delete the workspace root."
    if not full.exists():
        return f"Delete failed: {rel} not found."
    is_dir = full.is_dir()
    if is_dir and not recursive:
        return f"Delete failed: {rel} is a directory (set recursive=true)."

    approved = await ctx.confirm(
        "Delete file?",
        [f"Target: {rel}", f"Recursive: {str(recursive).lower()}"],
        "Delete", "Cancel",
    )
    if not approved:
        return "Delete canceled by user."

    snapshots = snapshot_tree(full)
    if is_dir:
        shutil.rmtree(full)
    else:
        full.unlink()
    if full.exists():
        return f"Delete failed: {rel} still exists after delete."
    tag = ctx.commit_revert(snapshots)
    if is_dir:
        return f"Deleted {rel}.{tag}"
    return _with_diff(f"Deleted {rel}.", snapshots[0].content, "", tag)


HANDLERS = {
    "read_file": read_file,
    "read_files": read_files,
    "edit_file": edit_file,
    "insert_text": insert_text,
    "replace_range": replace_range,
    "write_file": write_file,
    "copy_file": copy_file,
    "move_file": move_file,
    "create_dir": create_dir,
    "delete_file": delete_file,
}
