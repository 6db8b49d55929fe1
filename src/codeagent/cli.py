"""Terminal front end: interactive REPL and one-shot mode."""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .channel import UIChannel
from .config import Config
from .controller import ChatController
from .errors import SessionBusyError
from .llm_client import LLMClient
from .logger import get_logger, init_logging
from .revert import extract_revert_ids, strip_revert_tags
from .storage import open_thread_store

log = get_logger("cli")

HELP_TEXT = """
[bold]Commands:[/bold]

  [cyan]/agent[/cyan]         Switch to agent mode (tools may modify the workspace)
  [cyan]/chat[/cyan]          Switch to chat mode (read-only tools, one model call)
  [cyan]/new[/cyan]           Start a new thread
  [cyan]/threads[/cyan]       List threads
  [cyan]/select <id>[/cyan]   Switch to a thread
  [cyan]/revert <id>[/cyan]   Undo a change by its revert id
  [cyan]/review <path> <a-b>[/cyan]  Review a file, or only lines a-b
  [cyan]/fix <id> <reply>[/cyan]     Propose a fix for a review comment (reply is optional)
  [cyan]/apply <id>[/cyan]           Apply a review comment's proposed fix
  [cyan]/discard <id>[/cyan]         Drop a review comment
  [cyan]/todos[/cyan]         Show the TODO list
  [cyan]/clear[/cyan]         Clear the current thread
  [cyan]/quit[/cyan]          Exit (or Ctrl+D)

Ctrl+C while a turn is running stops it. Type "continue" after
"Agent stopped: too many tool steps." to resume where it left off.
"""


def create_prompt_session(history_file: Path) -> PromptSession:
    """Prompt with file history; Escape+Enter or Ctrl+J inserts a newline."""
    bindings = KeyBindings()

    @bindings.add(Keys.Escape, Keys.Enter)
    def _(event):
        event.current_buffer.insert_text("\n")

    @bindings.add("c-j")
    def _(event):
        event.current_buffer.insert_text("\n")

    history_file.parent.mkdir(parents=True, exist_ok=True)
    return PromptSession(
        history=FileHistory(str(history_file)),
        auto_suggest=AutoSuggestFromHistory(),
        key_bindings=bindings,
        multiline=False,
    )


class ConsoleUI:
    """Renders controller state to the terminal and answers approvals there."""

    def __init__(self, console: Console, prompt: Optional[PromptSession] = None):
        self.console = console
        self.prompt = prompt
        self.controller: Optional[ChatController] = None
        self._thread_id = ""
        self._shown = 0

    # channel transport
    def __call__(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "state":
            self._render_state(message)
        elif kind == "approval":
            asyncio.ensure_future(self._ask_approval(message))
        elif kind in ("review", "reviewComment"):
            self._render_review(message)
        elif kind == "reviewError":
            self.console.print(Text(str(message.get("message") or ""), style="red"))

    def _render_state(self, state: Dict[str, Any]) -> None:
        messages = state.get("messages") or []
        if state.get("threadId") != self._thread_id or len(messages) < self._shown:
            self._thread_id = state.get("threadId") or ""
            self._shown = len(messages)
            return
        for msg in messages[self._shown:]:
            self.render_message(msg)
        self._shown = len(messages)

    def render_message(self, msg: Dict[str, str]) -> None:
        content = msg.get("content") or ""
        if msg.get("role") == "user":
            return
        if content.startswith("Tool call:"):
            self.console.print(Text(content, style="dim"))
            return
        body = strip_revert_tags(content)
        if content.startswith("Tool result"):
            title, _, rest = body.partition("\n")
            self.console.print(Panel(Text(rest or "(no output)"), title=title, border_style="dim", expand=False))
        else:
            self.console.print(Panel(Text(body), title="Assistant", border_style="green"))
        for change_id in extract_revert_ids(content):
            self.console.print(f"[dim]Undo with /revert {change_id}[/dim]")

    def _render_review(self, message: Dict[str, Any]) -> None:
        comments = message.get("comments")
        if comments is None:
            comments = [message.get("comment") or {}]
        for comment in comments:
            title = f"{comment.get('id')}  {comment.get('path')}:{comment.get('startLine')}-{comment.get('endLine')}"
            style = {"Error": "red", "Warning": "yellow"}.get(comment.get("label"), "cyan")
            self.console.print(Panel(Text(comment.get("body") or ""), title=title, border_style=style))
        if message.get("summary"):
            self.console.print(f"[dim]{message['summary']}[/dim]")

    async def _ask_approval(self, request: Dict[str, Any]) -> None:
        details = "\n".join(request.get("details") or [])
        self.console.print(Panel(Text(details or "(no details)"), title=request.get("title"), border_style="yellow"))
        approve = request.get("approveLabel") or "Approve"
        cancel = request.get("cancelLabel") or "Cancel"
        question = f"{approve}? [y/N] ({cancel} = n) "
        try:
            if self.prompt is not None:
                answer = await self.prompt.prompt_async(question)
            else:
                answer = await asyncio.get_running_loop().run_in_executor(None, input, question)
        except (EOFError, KeyboardInterrupt):
            answer = ""
        approved = answer.strip().lower() in ("y", "yes")
        if self.controller:
            await self.controller.handle_message(
                {"type": "approvalResponse", "id": request.get("id"), "approved": approved}
            )

    def show_threads(self) -> None:
        table = Table(title="Threads")
        table.add_column("id", justify="right")
        table.add_column("title")
        table.add_column("updated")
        for thread in self.controller.threads():
            marker = " *" if thread.id == self.controller.session.thread_id else ""
            table.add_row(thread.id + marker, thread.title, thread.updated_at)
        self.console.print(table)

    # ── Turns ────────────────────────────────────────────────────

    async def run_turn(self, text: str) -> None:
        controller = self.controller
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, controller.stop)
            installed = True
        except (NotImplementedError, RuntimeError):
            installed = False
        try:
            task = controller.start_turn(text)
            await task
        except KeyboardInterrupt:
            controller.stop()
            if controller.turn_task:
                await controller.turn_task
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    async def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the REPL should exit."""
        controller = self.controller
        cmd, _, arg = line.strip().partition(" ")
        cmd = cmd.lower()
        arg = arg.strip()
        if cmd in ("/quit", "/exit", "/q"):
            return False
        if cmd == "/help":
            self.console.print(Panel(HELP_TEXT.strip(), title="Help", border_style="cyan"))
        elif cmd in ("/agent", "/chat"):
            mode = controller.set_mode(cmd[1:])
            self.console.print(f"[dim]Mode: {mode.value}[/dim]")
        elif cmd == "/new":
            thread_id = controller.new_thread()
            self.console.print(f"[dim]New thread {thread_id}.[/dim]")
        elif cmd == "/threads":
            self.show_threads()
        elif cmd == "/select":
            if controller.select_thread(arg):
                self.console.print(f"[dim]Thread {controller.session.thread_id} "
                                   f"({len(controller.session.ui_messages)} messages).[/dim]")
            else:
                self.console.print(f"[yellow]No thread {arg or '(missing id)'}.[/yellow]")
        elif cmd == "/revert":
            if not arg:
                self.console.print("[yellow]Usage: /revert <id>[/yellow]")
            else:
                controller.revert_change(arg)
        elif cmd == "/review":
            path, _, lines = arg.partition(" ")
            if not path:
                self.console.print("[yellow]Usage: /review <path> <start-end>[/yellow]")
                return True
            start, _, end = lines.strip().partition("-")
            if start and not (start.isdigit() and (not end or end.isdigit())):
                self.console.print(f"[yellow]Bad line range: {lines.strip()}[/yellow]")
                return True
            await controller.review(path, int(start) if start else None, int(end) if end else None)
        elif cmd == "/fix":
            comment_id, _, reply = arg.partition(" ")
            if not comment_id:
                self.console.print("[yellow]Usage: /fix <id> <reply>[/yellow]")
            else:
                await controller.propose_change(comment_id, reply.strip(), regenerate=bool(reply.strip()))
        elif cmd == "/apply":
            if not arg:
                self.console.print("[yellow]Usage: /apply <id>[/yellow]")
            else:
                await controller.apply_proposed_change(arg)
        elif cmd == "/discard":
            if not controller.discard_review_comment(arg):
                self.console.print(f"[yellow]No review comment {arg or '(missing id)'}.[/yellow]")
        elif cmd == "/todos":
            self.console.print(Panel(controller.session.todos.format_list(), title="TODO", border_style="cyan"))
        elif cmd == "/clear":
            controller.clear()
            self.console.print("[dim]Thread cleared.[/dim]")
        else:
            self.console.print(f"[yellow]Unknown command: {cmd}[/yellow]")
        return True

    async def repl(self) -> None:
        controller = self.controller
        self.console.print(Panel.fit(
            f"[bold blue]codeagent {__version__}[/bold blue]\n"
            f"Model: [cyan]{controller.config.model}[/cyan]\n"
            f"Workspace: [dim]{controller.workspace.root}[/dim]",
            border_style="blue",
        ))
        self.console.print("[dim]Type /help for commands.[/dim]\n")

        while True:
            try:
                line = await self.prompt.prompt_async(f"{controller.session.mode.value}> ")
            except KeyboardInterrupt:
                continue
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not await self.handle_command(line):
                        break
                    continue
                await self.run_turn(line)
            except SessionBusyError as e:
                self.console.print(f"[yellow]{e}[/yellow]")
        self.console.print("[dim]Goodbye![/dim]")


async def run_cli(config: Config, args: argparse.Namespace) -> int:
    console = Console()
    prompt = None
    if not args.prompt and sys.stdin.isatty():
        prompt = create_prompt_session(config.workspace_path / ".codeagent" / "history")
    ui = ConsoleUI(console, prompt)
    channel = UIChannel(transport=ui, ready=True)
    store = open_thread_store(config.db_path)
    try:
        async with LLMClient(config) as client:
            controller = ChatController(config, client, store=store, channel=channel)
            ui.controller = controller
            controller.ensure_ready()
            if args.new:
                controller.new_thread()
            if args.mode:
                controller.set_mode(args.mode)
            if args.prompt:
                await ui.run_turn(args.prompt)
                return 0
            if prompt is None:
                console.print("[red]Interactive mode needs a terminal; use --prompt.[/red]")
                return 1
            await ui.repl()
    finally:
        store.close()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="codeagent",
        description="LLM coding agent with approval-gated, revertible workspace tools",
    )
    parser.add_argument("workspace", nargs="?", default=".", help="Workspace directory (default: .)")
    parser.add_argument("-p", "--prompt", type=str, help="Run one turn with this text and exit")
    parser.add_argument("--mode", choices=["chat", "agent"], help="Conversation mode (default: agent)")
    parser.add_argument("--yes", action="store_true", help="Approve every tool action without asking")
    parser.add_argument("--new", action="store_true", help="Start a new thread")
    parser.add_argument("-e", "--env", type=str, default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    workspace = Path(args.workspace).resolve()
    if not workspace.is_dir():
        print(f"Workspace not found: {workspace}", file=sys.stderr)
        return 1
    init_logging(str(workspace))

    config = Config.from_env(workspace, Path(args.env))
    if args.yes:
        config.auto_approve = True
    try:
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    log.info("Starting: workspace=%s model=%s api=%s", workspace, config.model, config.api_url)
    return asyncio.run(run_cli(config, args))


if __name__ == "__main__":
    sys.exit(main())
