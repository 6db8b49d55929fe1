"""Code review: model-written line comments that each carry a proposed fix.

A review sends a file (or a line range of it) to the model and keeps the
returned comments as threads keyed by id. A thread can ask the model for
a fresh replacement, optionally steered by the user's reply, and can
apply that replacement. Applying goes through the approval gate and
snapshots the file first, so the result carries a ``[[revert:<id>]]``
tag like any tool edit.
"""

import itertools
import math
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .diff_engine import build_diff_block
from .errors import ReviewError
from .logger import get_logger, truncate
from .revert import FileSnapshot
from .scanner import extract_first_json_payload, safe_json_loads
from .tools.file_tools import detect_eol, doc_lines, line_spans, read_file_text, write_file_text
from .tools.registry import ToolContext, clamp

log = get_logger("review")

REVIEW_MAX_CHARS = 80000
TRUNCATED_MARKER = "\n\n/* ...TRUNCATED... */\n"
PROPOSED_DIFF_HEADER = "**Proposed change (diff):**"
FIX_FAILED_MESSAGE = 'Proposed change failed (model did not return {"newText": "..."}).'
MISSING_COMMENTS_MESSAGE = "Model did not return expected JSON (missing comments)."
FIX_CONTEXT_LINES = 20

SEVERITY_LABELS = {"error": "Error", "warning": "Warning"}

RESPONSE_KEYS = ("comments", "comment", "issues", "findings")

LANGUAGE_BY_SUFFIX = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".java": "java",
    ".cs": "csharp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".kt": "kotlin",
    ".swift": "swift",
    ".sh": "shellscript",
    ".sql": "sql",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".html": "html",
    ".css": "css",
}

_ASSIGNMENT_RE = re.compile(r"\b(?:var|[A-Za-z_][A-Za-z0-9_<>]*)\s+([A-Za-z_][A-Za-z0-9_]*)\s*=")
_LEADING_WS_RE = re.compile(r"^\s*")


def language_for_path(path) -> str:
    return LANGUAGE_BY_SUFFIX.get(Path(path).suffix.lower(), "plaintext")


def read_instructions_file(path_like: str, root: Path) -> str:
    """Optional instructions file; "" when unset or unreadable."""
    raw = (path_like or "").strip()
    if not raw:
        return ""
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path(root) / path
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        log.debug("Instructions file %s not read: %s", path, e)
        return ""


# ── Prompts ──────────────────────────────────────────────────────

def _with_instructions(lines: List[str], instructions: str) -> str:
    if instructions and instructions.strip():
        lines = lines + ["", "EXTRA INSTRUCTIONS:", instructions.strip()]
    return "\n".join(lines)


def build_review_system_prompt(instructions: str = "") -> str:
    return _with_instructions([
        "You are a code review assistant.",
        "Return JSON only, no prose.",
        'Your JSON must include a "comments" array.',
        'Each comment: {"message":"...","startLine":1,"endLine":1,"severity":"info|warning|error","newText":"..."}.',
        "Provide a proposed fix in newText for every comment.",
        "Line numbers are 1-based within the provided snippet.",
        "If you need multiple comments, return multiple items.",
        "Do not return markdown or any extra keys.",
    ], instructions)


def build_review_user_prompt(code: str, language: str) -> str:
    return "\n".join([
        "Review the following code and suggest fixes.",
        f"Language: {language}",
        "",
        "CODE START",
        code,
        "CODE END",
    ])


def build_fix_system_prompt(instructions: str = "") -> str:
    return _with_instructions([
        "You are a code assistant.",
        "Given the user feedback and snippet, return JSON only.",
        'Return JSON with {"newText":"..."} only.',
    ], instructions)


def build_fix_user_prompt(snippet: str, comment_text: str, language: str,
                          user_response: str = "", review_context: str = "") -> str:
    parts = [
        "Apply the requested change to the snippet.",
        f"Language: {language}",
        'Return JSON with {"newText":"..."} only.',
        "\nREVIEW COMMENTS:",
        comment_text or "(none)",
    ]
    if user_response and user_response.strip():
        parts += ["\nUSER RESPONSE:", user_response.strip()]
    if review_context and review_context.strip():
        parts += ["\nREVIEW CONTEXT (read-only):", review_context]
    parts += ["\nSNIPPET START", snippet, "SNIPPET END"]
    return "\n".join(parts)


# ── Reply parsing ────────────────────────────────────────────────

def parse_json_reply(text: str) -> Optional[Any]:
    """The reply as JSON, or the first JSON payload embedded in it."""
    parsed = safe_json_loads(text)
    if parsed is None:
        parsed = safe_json_loads(extract_first_json_payload(text))
    return parsed


def normalize_review_response(parsed: Any) -> Optional[List[Any]]:
    """Comment list from a bare array or from any of ``RESPONSE_KEYS``."""
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in RESPONSE_KEYS:
            if isinstance(parsed.get(key), list):
                return parsed[key]
    return None


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_comment_lines(comment: Dict[str, Any], line_offset: int,
                            line_count: int) -> Optional[Tuple[int, int]]:
    """0-based (start, end) file line indices for a comment, or None if unusable.

    ``startLine``/``endLine`` are 1-based within the reviewed snippet, which
    begins at file line index ``line_offset``.
    """
    start_raw = _finite_number(comment.get("startLine"))
    end_value = comment.get("endLine")
    end_raw = _finite_number(comment.get("startLine") if end_value is None else end_value)
    if start_raw is None or end_raw is None:
        return None

    start = max(1, math.floor(start_raw))
    end = max(start, max(1, math.floor(end_raw)))
    max_index = max(0, line_count - 1)
    return (
        clamp(line_offset + start - 1, 0, max_index),
        clamp(line_offset + end - 1, 0, max_index),
    )


def normalize_indentation(new_text: str, snippet: str) -> str:
    """Re-indent every non-empty line of ``new_text`` to the snippet's first-line indent."""
    old_lines = doc_lines(snippet or "")
    indent = _LEADING_WS_RE.match(old_lines[0]).group(0)
    stripped = [line.lstrip() for line in doc_lines(new_text or "")]
    return "\n".join(indent + line if line else line for line in stripped)


def extract_assigned_variable(text: str) -> str:
    match = _ASSIGNMENT_RE.search(text or "")
    return match.group(1) if match else ""


def fix_range(lines: List[str], start: int, end: int) -> Tuple[int, int]:
    """Widen ``[start, end]`` by one line when the next line uses a variable assigned in it."""
    name = extract_assigned_variable("\n".join(lines[start:end + 1]))
    if not name:
        return start, end
    next_line = min(len(lines) - 1, end + 1)
    if next_line <= end:
        return start, end
    if not re.search(rf"\b{re.escape(name)}\b", lines[next_line]):
        return start, end
    return start, next_line


def strip_proposed_diff(text: str) -> str:
    index = (text or "").find(PROPOSED_DIFF_HEADER)
    if index == -1:
        return text or ""
    return text[:index].strip()


def build_comment_text(bodies: List[str]) -> str:
    parts = [strip_proposed_diff(body).strip() for body in bodies]
    return "\n\n---\n\n".join(p for p in parts if p)


def surrounding_context(lines: List[str], start: int, end: int,
                        context_lines: int = FIX_CONTEXT_LINES) -> str:
    first = max(0, start - context_lines)
    last = min(len(lines) - 1, end + context_lines)
    return "\n".join(lines[first:last + 1])


def _range_text(text: str, spans: List[Tuple[int, int]], start: int, end: int) -> str:
    return text[spans[start][0]:spans[end][1]]


# ── Threads ──────────────────────────────────────────────────────

@dataclass
class ProposedChange:
    """Replacement for 1-based inclusive lines ``start_line..end_line``."""
    start_line: int
    end_line: int
    snippet: str
    new_text: str

    def diff(self) -> str:
        return build_diff_block(self.snippet, self.new_text)


@dataclass
class ReviewComment:
    id: str
    path: Path
    message: str
    severity: str
    start_line: int
    end_line: int
    snippet: str
    context: str = ""
    proposal: Optional[ProposedChange] = None
    replies: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return SEVERITY_LABELS.get(self.severity, "Suggestion")

    def render(self) -> str:
        body = f"**{self.label}:** {self.message}"
        if self.proposal is not None:
            body += f"\n\n{PROPOSED_DIFF_HEADER}\n\n{self.proposal.diff()}"
        return body

    def comment_text(self) -> str:
        return build_comment_text([self.render()] + self.replies)

    def to_dict(self, relpath: Callable[[Path], str] = str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": relpath(self.path),
            "startLine": self.start_line,
            "endLine": self.end_line,
            "severity": self.severity,
            "label": self.label,
            "message": self.message,
            "hasProposal": self.proposal is not None,
            "body": self.render(),
        }


@dataclass
class ReviewResult:
    path: Path
    comments: List[ReviewComment] = field(default_factory=list)
    omitted: int = 0
    skipped: int = 0
    truncated: bool = False

    def summary(self) -> str:
        lines = [f"Posted {len(self.comments)} comment(s)."]
        if self.truncated:
            lines.append("Input was truncated before review.")
        if self.omitted:
            lines.append(f"Omitted {self.omitted} comment(s) without proposed fixes.")
        if self.skipped:
            lines.append(f"Skipped {self.skipped} comment(s) due to invalid line numbers from the model.")
        return "\n".join(lines)


class CodeReviewer:
    """Runs reviews and keeps their comment threads until applied or discarded.

    ``client`` is anything with ``complete(system_prompt, messages)``; the
    tool context supplies the workspace, approval gate and revert ledger.
    """

    def __init__(
        self,
        client,
        ctx: ToolContext,
        max_chars: int = REVIEW_MAX_CHARS,
        instructions_file: str = "",
        fix_instructions_file: str = "",
    ):
        self.client = client
        self.ctx = ctx
        self.max_chars = max_chars
        self.instructions_file = instructions_file
        self.fix_instructions_file = fix_instructions_file
        self.threads: "OrderedDict[str, ReviewComment]" = OrderedDict()
        self._ids = itertools.count(1)

    def get(self, comment_id: str) -> ReviewComment:
        comment = self.threads.get((comment_id or "").strip())
        if comment is None:
            raise ReviewError(f"Unknown review comment: {comment_id}")
        return comment

    def discard(self, comment_id: str) -> bool:
        return self.threads.pop((comment_id or "").strip(), None) is not None

    def clear(self) -> None:
        self.threads.clear()

    async def _ask(self, system_prompt: str, user_prompt: str) -> str:
        return await self.client.complete(system_prompt, [{"role": "user", "content": user_prompt}])

    async def _read(self, full: Path) -> str:
        try:
            return await read_file_text(full)
        except OSError as e:
            raise ReviewError(f"Could not read {self.ctx.workspace.relpath(full)}: {e.strerror or e}") from e

    async def review_file(self, path: str, start_line: Optional[int] = None,
                          end_line: Optional[int] = None, extra_context: str = "") -> ReviewResult:
        """Review a whole file, or lines ``start_line..end_line`` of it."""
        full = self.ctx.workspace.resolve(path)
        if full is None or not full.is_file():
            raise ReviewError("Review failed: invalid or out-of-workspace path.")
        text = await self._read(full)
        lines = doc_lines(text)
        spans = line_spans(text)

        line_offset = 0
        code = text
        if start_line is not None:
            first = clamp(int(start_line), 1, len(lines))
            last = clamp(int(end_line or first), first, len(lines))
            line_offset = first - 1
            code = _range_text(text, spans, first - 1, last - 1)

        result = ReviewResult(path=full)
        if len(code) > self.max_chars:
            code = code[:self.max_chars] + TRUNCATED_MARKER
            result.truncated = True
            log.warning("Review input truncated to %d chars", self.max_chars)

        base = read_instructions_file(self.instructions_file, self.ctx.workspace.root)
        instructions = "\n\n".join(p for p in (base, (extra_context or "").strip()) if p)
        log.info("Review %s (lines from %d, %d chars)", self.ctx.workspace.relpath(full), line_offset + 1, len(code))
        raw = await self._ask(build_review_system_prompt(instructions),
                              build_review_user_prompt(code, language_for_path(full)))

        items = normalize_review_response(parse_json_reply(raw))
        if items is None:
            log.warning("Review reply without comments: %s", truncate(raw or "(empty response)", 2000))
            raise ReviewError(MISSING_COMMENTS_MESSAGE)
        with_fix = [
            item for item in items
            if isinstance(item, dict) and isinstance(item.get("newText"), str) and item["newText"].strip()
        ]
        result.omitted = len(items) - len(with_fix)
        if not with_fix:
            log.warning("All %d review comment(s) omitted: no proposed fixes", len(items))
            return result

        self.clear()
        for item in with_fix:
            normalized = normalize_comment_lines(item, line_offset, len(lines))
            if normalized is None:
                result.skipped += 1
                continue
            start, end = normalized
            snippet = _range_text(text, spans, start, end)
            comment = ReviewComment(
                id=f"review_{next(self._ids)}",
                path=full,
                message=str(item.get("message") or ""),
                severity=str(item.get("severity") or "info").lower(),
                start_line=start + 1,
                end_line=end + 1,
                snippet=snippet,
                context=code,
            )
            adjusted = normalize_indentation(item["newText"], snippet)
            if adjusted and doc_lines(adjusted) != doc_lines(snippet):
                comment.proposal = ProposedChange(start + 1, end + 1, snippet, adjusted)
            self.threads[comment.id] = comment
            result.comments.append(comment)

        log.info("Review posted %d comment(s), omitted %d, skipped %d",
                 len(result.comments), result.omitted, result.skipped)
        return result

    async def generate_proposed_change(self, comment_id: str, reply: str = "") -> ReviewComment:
        """Ask the model for a replacement of the comment's lines and attach it."""
        comment = self.get(comment_id)
        text = await self._read(comment.path)
        lines = doc_lines(text)
        spans = line_spans(text)
        max_index = len(lines) - 1
        base_start = min(comment.start_line - 1, max_index)
        base_end = clamp(comment.end_line - 1, base_start, max_index)
        start, end = fix_range(lines, base_start, base_end)
        snippet = _range_text(text, spans, start, end)

        reply = (reply or "").strip()
        user_prompt = build_fix_user_prompt(
            snippet,
            comment.comment_text(),
            language_for_path(comment.path),
            reply,
            comment.context or surrounding_context(lines, start, end),
        )
        instructions = read_instructions_file(self.fix_instructions_file, self.ctx.workspace.root)
        raw = await self._ask(build_fix_system_prompt(instructions), user_prompt)

        parsed = parse_json_reply(raw)
        new_text = parsed.get("newText") if isinstance(parsed, dict) else None
        if not isinstance(new_text, str) or not new_text.strip():
            log.warning("Proposed change failed, raw reply: %s", truncate(raw or "(empty response)", 2000))
            raise ReviewError(FIX_FAILED_MESSAGE)

        if reply:
            comment.replies.append(reply)
        comment.proposal = ProposedChange(start + 1, end + 1, snippet, normalize_indentation(new_text, snippet))
        log.info("Proposed change for %s (lines %d-%d)", comment.id, start + 1, end + 1)
        return comment

    async def regenerate_proposed_change(self, comment_id: str, reply: str = "") -> ReviewComment:
        """Replace the current proposal, steering the model with the user's reply."""
        return await self.generate_proposed_change(comment_id, reply)

    async def apply_proposed_change(self, comment_id: str) -> str:
        """Write the proposal over its lines after approval; the thread is closed on success."""
        comment = self.get(comment_id)
        proposal = comment.proposal
        if proposal is None:
            return "Apply failed: no proposed change for this comment."
        full = comment.path
        rel = self.ctx.workspace.relpath(full)
        try:
            before = await read_file_text(full)
        except OSError as e:
            return f"Apply failed: {e.strerror or e}"

        spans = line_spans(before)
        start, end = proposal.start_line - 1, proposal.end_line - 1
        if end >= len(spans) or doc_lines(_range_text(before, spans, start, end)) != doc_lines(proposal.snippet):
            return (f"Apply failed: {rel} lines {proposal.start_line}-{proposal.end_line} "
                    "changed since the change was proposed.")

        approved = await self.ctx.confirm(
            "Apply proposed change?",
            [f"File: {rel}", f"Lines: {proposal.start_line}-{proposal.end_line}",
             f"Comment: {truncate(comment.message, 200)}"],
            "Apply", "Cancel",
        )
        if not approved:
            return "Proposed change canceled by user."

        snapshot = FileSnapshot.capture(full)
        replacement = detect_eol(before).join(doc_lines(proposal.new_text))
        after = before[:spans[start][0]] + replacement + before[spans[end][1]:]
        await write_file_text(full, after)
        self.threads.pop(comment.id, None)
        log.info("Applied proposed change %s to %s", comment.id, rel)

        diff = build_diff_block(before, after)
        suffix = f"\n\n{diff}" if diff else ""
        return (f"Proposed change applied to {rel} (lines {proposal.start_line}-{proposal.end_line})."
                f"{suffix}{self.ctx.commit_revert([snapshot])}")
