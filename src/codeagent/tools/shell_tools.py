"""Shell command execution and patch application."""

import asyncio
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from ..diff_engine import limit_diff_lines
from ..logger import get_logger, truncate as log_truncate
from ..revert import FileSnapshot
from .registry import ToolContext, arg_int, arg_str, clamp

log = get_logger("shell")

DEFAULT_TIMEOUT_MS = 60_000
MAX_TIMEOUT_MS = 5 * 60 * 1000
PATCH_TIMEOUT_S = 60.0

_ANSI_ESCAPE_RE = re.compile(r'\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~]|\][^\x07]*(?:\x07|\x1b\\))')
_DANGEROUS_CTRL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f]')
_PATCH_HEADER_RE = re.compile(r"^(?:---|\+\+\+)\s+(\S+)")


def kill_process_tree(pid: int, timeout: float = 3.0) -> None:
    """Kill a process and all its descendants, children first."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    children = []
    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    for child in reversed(children):
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    try:
        parent.kill()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    _gone, alive = psutil.wait_procs(children + [parent], timeout=timeout)
    for p in alive:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass


def sanitize_terminal_output(text: str) -> str:
    """Strip ANSI escape sequences and control characters (keeps tab, newline, CR)."""
    return _DANGEROUS_CTRL_CHARS.sub("", _ANSI_ESCAPE_RE.sub("", text))


@dataclass
class ShellResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    return_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.timed_out

    def combined(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


async def run_shell(command: str, cwd: Optional[Path] = None, timeout: float = 60.0) -> ShellResult:
    """Run ``command`` through the platform shell; kill the whole tree on timeout."""
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        kill_process_tree(process.pid)
        await process.wait()
        return ShellResult(
            stdout="",
            stderr=f"Command timed out after {timeout:g} seconds",
            return_code=process.returncode if process.returncode is not None else -1,
            timed_out=True,
        )
    except asyncio.CancelledError:
        kill_process_tree(process.pid)
        raise
    return ShellResult(
        stdout=sanitize_terminal_output(stdout.decode("utf-8", errors="replace")).strip(),
        stderr=sanitize_terminal_output(stderr.decode("utf-8", errors="replace")).strip(),
        return_code=process.returncode or 0,
    )


def _quote(path: Path) -> str:
    return f'"{path}"'


# ── run_command ──────────────────────────────────────────────────

async def run_command(ctx: ToolContext, args: Dict[str, Any]) -> str:
    command = arg_str(args, "command")
    if not command:
        return "Run failed: command is required."
    raw_cwd = arg_str(args, "cwd")
    cwd = ctx.workspace.resolve(raw_cwd) if raw_cwd else ctx.workspace.root
    if cwd is None or not cwd.is_dir():
        return "Run failed: invalid or missing workspace cwd."
    timeout_ms = clamp(arg_int(args, "timeoutMs") or DEFAULT_TIMEOUT_MS, 1000, MAX_TIMEOUT_MS)

    rel_cwd = ctx.workspace.relpath(cwd) or "."
    approved = await ctx.confirm(
        "Run command?",
        [f"Command: {command}", f"Cwd: {rel_cwd}", f"Timeout: {timeout_ms}ms"],
        "Run", "Cancel",
    )
    if not approved:
        return "Command canceled by user."

    t0 = time.time()
    try:
        result = await run_shell(command, cwd, timeout_ms / 1000)
    except OSError as e:
        return f"Command failed: {e}"
    log.info("run_command exit=%s elapsed=%.1fs cmd=%s", result.return_code,
             time.time() - t0, log_truncate(command, 200))

    if result.ok:
        output = result.combined()
        if not output:
            return "Command succeeded (exit 0) with no output."
        return f"Command succeeded (exit 0):\n{output}"

    if result.timed_out:
        text = f"Command failed: {result.stderr}: {command}"
    else:
        text = f"Command failed (exit {result.return_code}): {command}"
        if result.stdout:
            text += f"\nSTDOUT:\n{result.stdout}"
        if result.stderr:
            text += f"\nSTDERR:\n{result.stderr}"
    return text


# ── Patches ──────────────────────────────────────────────────────

def extract_patch_targets(patch: str) -> List[str]:
    """Paths named by ``---``/``+++`` headers, minus /dev/null."""
    targets = []
    for line in (patch or "").splitlines():
        match = _PATCH_HEADER_RE.match(line)
        if not match:
            continue
        raw = match.group(1)
        if raw == "/dev/null":
            continue
        for prefix in ("a/", "b/"):
            if raw.startswith(prefix):
                raw = raw[len(prefix):]
                break
        if raw not in targets:
            targets.append(raw)
    return targets


def _patch_echo(patch: str) -> str:
    text, truncated = limit_diff_lines(patch, 400)
    note = "\n\nPatch diff truncated." if truncated else ""
    return f"```diff\n{text}\n```{note}"


def _resolve_patch_cwd(ctx: ToolContext, args: Dict[str, Any]) -> Optional[Path]:
    raw_cwd = arg_str(args, "cwd")
    cwd = ctx.workspace.resolve(raw_cwd) if raw_cwd else ctx.workspace.root
    if cwd is None or not cwd.is_dir():
        return None
    return cwd


def _write_temp_patch(patch: str) -> Path:
    fd, name = tempfile.mkstemp(prefix="codeagent_patch_", suffix=".diff")
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
        fh.write(patch if patch.endswith("\n") else patch + "\n")
    return Path(name)


async def apply_patch(ctx: ToolContext, args: Dict[str, Any]) -> str:
    patch = str(args.get("patch") or args.get("diff") or "").strip()
    if not patch:
        return "Apply patch failed: patch content is empty."
    cwd = _resolve_patch_cwd(ctx, args)
    if cwd is None:
        return "Apply patch failed: invalid or missing workspace cwd."

    approved = await ctx.confirm(
        "Apply patch?",
        [f"Cwd: {ctx.workspace.relpath(cwd) or '.'}", f"Patch size: {len(patch)} chars"],
        "Apply", "Cancel",
    )
    if not approved:
        return "Apply patch canceled by user."

    snapshots = []
    seen = set()
    for target in extract_patch_targets(patch):
        full = ctx.workspace.resolve(str(cwd / target))
        if full is None or full in seen:
            continue
        seen.add(full)
        snapshots.append(FileSnapshot.capture(full))

    tmp_path = _write_temp_patch(patch)
    applied = False
    output = ""
    try:
        if shutil.which("git"):
            result = await run_shell(f"git apply --whitespace=nowarn {_quote(tmp_path)}", cwd, PATCH_TIMEOUT_S)
            if result.ok:
                applied = True
                output = result.combined()
            else:
                output = f"git apply failed: {result.combined()}".strip()
        if not applied:
            for cmd in ("patch -p0 -i", "patch -p1 -i"):
                result = await run_shell(f"{cmd} {_quote(tmp_path)}", cwd, PATCH_TIMEOUT_S)
                if result.ok:
                    applied = True
                    output = result.combined() or output
                    break
                output = f"patch failed: {result.combined()}".strip()
    finally:
        try:
            tmp_path.unlink()
        except OSError as e:
            log.debug("Could not remove %s: %s", tmp_path, e)

    if not applied:
        return output or "Apply patch failed."
    suffix = f"\n\n{_patch_echo(patch)}{ctx.commit_revert(snapshots)}"
    return f"Patch applied.\n{output}{suffix}" if output else f"Patch applied.{suffix}"


async def apply_patch_preview(ctx: ToolContext, args: Dict[str, Any]) -> str:
    patch = str(args.get("patch") or args.get("diff") or "").strip()
    if not patch:
        return "Apply patch preview failed: patch content is empty."
    cwd = _resolve_patch_cwd(ctx, args)
    if cwd is None:
        return "Apply patch preview failed: invalid or missing workspace cwd."

    if not shutil.which("git"):
        check = "Patch check: git not available."
    else:
        tmp_path = _write_temp_patch(patch)
        try:
            result = await run_shell(f"git apply --check {_quote(tmp_path)}", cwd, PATCH_TIMEOUT_S)
        finally:
            try:
                tmp_path.unlink()
            except OSError as e:
                log.debug("Could not remove %s: %s", tmp_path, e)
        if result.ok:
            check = "Patch check: applies cleanly."
        else:
            detail = result.stderr or result.stdout
            check = f"Patch check: failed\n{detail}" if detail else "Patch check: failed"
    return f"{check}\n\n{_patch_echo(patch)}"


HANDLERS = {
    "run_command": run_command,
    "apply_patch": apply_patch,
    "apply_patch_preview": apply_patch_preview,
}
