"""Line-level unified diff used to report every file mutation.

The middle region left after stripping the common prefix and suffix is
diffed with a longest-common-subsequence table. When that table would
exceed ``max_cells`` the middle is reported as a plain remove-all/add-all
block instead, which is correct but not minimal.
"""

import re
from dataclasses import dataclass
from typing import List, Tuple

DEFAULT_CONTEXT_LINES = 3
DEFAULT_MAX_CELLS = 200_000
DEFAULT_MAX_DIFF_LINES = 400

CONTEXT = "context"
ADD = "add"
DEL = "del"

_LINE_SPLIT_RE = re.compile(r"\r?\n")


@dataclass
class DiffOp:
    kind: str
    line: str
    old_pos: int = 0
    new_pos: int = 0


def split_lines(text: str) -> List[str]:
    if not text:
        return []
    return _LINE_SPLIT_RE.split(text)


def _lcs_ops(old_mid: List[str], new_mid: List[str]) -> List[DiffOp]:
    n, m = len(old_mid), len(new_mid)
    dp = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        row, below = dp[i], dp[i + 1]
        for j in range(m - 1, -1, -1):
            if old_mid[i] == new_mid[j]:
                row[j] = below[j + 1] + 1
            else:
                row[j] = max(below[j], row[j + 1])

    ops: List[DiffOp] = []
    i = j = 0
    while i < n and j < m:
        if old_mid[i] == new_mid[j]:
            ops.append(DiffOp(CONTEXT, old_mid[i]))
            i += 1
            j += 1
        elif dp[i + 1][j] >= dp[i][j + 1]:
            # ties prefer the deletion
            ops.append(DiffOp(DEL, old_mid[i]))
            i += 1
        else:
            ops.append(DiffOp(ADD, new_mid[j]))
            j += 1
    ops.extend(DiffOp(DEL, line) for line in old_mid[i:])
    ops.extend(DiffOp(ADD, line) for line in new_mid[j:])
    return ops


def diff_ops(old_text: str, new_text: str, max_cells: int = DEFAULT_MAX_CELLS) -> List[DiffOp]:
    """Return the full op sequence (with 1-based positions) turning old into new."""
    old_lines = split_lines(old_text)
    new_lines = split_lines(new_text)

    prefix = 0
    while (prefix < len(old_lines) and prefix < len(new_lines)
           and old_lines[prefix] == new_lines[prefix]):
        prefix += 1

    old_suffix = len(old_lines) - 1
    new_suffix = len(new_lines) - 1
    while (old_suffix >= prefix and new_suffix >= prefix
           and old_lines[old_suffix] == new_lines[new_suffix]):
        old_suffix -= 1
        new_suffix -= 1

    old_mid = old_lines[prefix:old_suffix + 1]
    new_mid = new_lines[prefix:new_suffix + 1]

    if len(old_mid) * len(new_mid) > max_cells:
        middle = [DiffOp(DEL, line) for line in old_mid] + [DiffOp(ADD, line) for line in new_mid]
    else:
        middle = _lcs_ops(old_mid, new_mid)

    ops = [DiffOp(CONTEXT, line) for line in old_lines[:prefix]]
    ops.extend(middle)
    ops.extend(DiffOp(CONTEXT, line) for line in old_lines[old_suffix + 1:])

    old_pos = new_pos = 1
    for op in ops:
        op.old_pos, op.new_pos = old_pos, new_pos
        if op.kind != ADD:
            old_pos += 1
        if op.kind != DEL:
            new_pos += 1
    return ops


def _hunk_ranges(ops: List[DiffOp], context_lines: int) -> List[Tuple[int, int]]:
    ranges: List[Tuple[int, int]] = []
    for idx, op in enumerate(ops):
        if op.kind == CONTEXT:
            continue
        start = max(0, idx - context_lines)
        end = min(len(ops) - 1, idx + context_lines)
        if ranges and start <= ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], max(ranges[-1][1], end))
        else:
            ranges.append((start, end))
    return ranges


def _truncate_lines(lines: List[str], max_lines: int) -> List[str]:
    kept = lines[:max_lines]
    # never leave a header without its body
    while kept and kept[-1].startswith("@@"):
        kept.pop()
    kept.append(" ...")
    return kept


def unified_diff(
    old_text: str,
    new_text: str,
    context_lines: int = DEFAULT_CONTEXT_LINES,
    max_cells: int = DEFAULT_MAX_CELLS,
    max_diff_lines: int = DEFAULT_MAX_DIFF_LINES,
) -> str:
    """Unified diff body (hunks only, no file headers); "" when texts are equal."""
    if old_text == new_text:
        return ""
    context_lines = max(0, int(context_lines))
    max_cells = max(1000, int(max_cells))
    max_diff_lines = max(50, int(max_diff_lines))

    ops = diff_ops(old_text, new_text, max_cells)
    ranges = _hunk_ranges(ops, context_lines)
    if not ranges:
        return ""

    out: List[str] = []
    for start, end in ranges:
        chunk = ops[start:end + 1]
        old_count = sum(1 for op in chunk if op.kind != ADD)
        new_count = sum(1 for op in chunk if op.kind != DEL)
        out.append(f"@@ -{chunk[0].old_pos},{old_count} +{chunk[0].new_pos},{new_count} @@")
        for op in chunk:
            marker = " " if op.kind == CONTEXT else ("+" if op.kind == ADD else "-")
            out.append(marker + op.line)

    if len(out) > max_diff_lines:
        out = _truncate_lines(out, max_diff_lines)
    return "\n".join(out)


def build_diff_block(old_text: str, new_text: str) -> str:
    """Fenced ```diff block for tool results, or "" when nothing changed."""
    diff_text = unified_diff(old_text, new_text, context_lines=DEFAULT_CONTEXT_LINES)
    if not diff_text:
        return ""
    return "```diff\n" + diff_text + "\n```"


def limit_diff_lines(text: str, max_lines: int = DEFAULT_MAX_DIFF_LINES) -> Tuple[str, bool]:
    """Cap a patch echo at ``max_lines`` lines; returns (text, truncated)."""
    src = text or ""
    lines = split_lines(src)
    limit = max(20, int(max_lines or DEFAULT_MAX_DIFF_LINES))
    if len(lines) <= limit:
        return src, False
    return "\n".join(lines[:limit]) + "\n...", True
