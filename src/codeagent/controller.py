"""Session controller: the only entry point for externally driven transitions.

The UI (a terminal, a web view, a test) talks to the controller either
through direct method calls or by feeding inbound channel payloads to
``handle_message``. State changes are pushed back as ``{"type": "state"}``
messages on the same channel.
"""

import asyncio
from typing import Any, Dict, List, Optional

from .agent_loop import AgentLoop, TurnOutcome
from .approval import ApprovalGate
from .channel import UIChannel
from .config import Config
from .context_management import STOPPED_MESSAGE, is_continuation_request, limit_tool_output
from .dispatcher import ToolDispatcher, format_tool_result
from .editor import EditorBridge, NullEditorBridge
from .errors import ReviewError, SessionBusyError
from .logger import get_logger, log_exception, truncate
from .prompts import get_system_prompt
from .review import CodeReviewer, ReviewComment, ReviewResult
from .revert import RevertLedger
from .session import AgentSession, Mode
from .storage import MemoryThreadStore, ThreadRecord, ThreadStore, default_thread_title, normalize_thread_id
from .todo import TodoItem, TodoList, seed_todos_from_prompt
from .tools.registry import ToolContext, ToolRegistry, build_default_registry
from .workspace import Workspace

log = get_logger("controller")

TURN_ERROR_MESSAGE = "Error: failed to get response. See log for details."
REVERT_ERROR_MESSAGE = "Error: failed to revert change. See log for details."
REVIEW_ERROR_MESSAGE = "Error: review failed. See log for details."


class ChatController:
    """Owns one ``AgentSession`` and everything needed to run its turns."""

    def __init__(
        self,
        config: Config,
        client,
        store: Optional[ThreadStore] = None,
        channel: Optional[UIChannel] = None,
        registry: Optional[ToolRegistry] = None,
        editor: Optional[EditorBridge] = None,
    ):
        self.config = config
        self.client = client
        self.store = store or MemoryThreadStore()
        self.channel = channel or UIChannel()
        self.workspace = Workspace(config.workspace_path)
        self.gate = ApprovalGate(self.channel, auto_approve=config.auto_approve)
        self.ledger = RevertLedger(config.max_reverts, relpath=self.workspace.relpath)
        self.tool_context = ToolContext(
            workspace=self.workspace,
            gate=self.gate,
            ledger=self.ledger,
            editor=editor or NullEditorBridge(),
        )
        self.dispatcher = ToolDispatcher(registry or build_default_registry(), self.tool_context)
        self.reviewer = CodeReviewer(
            client,
            self.tool_context,
            max_chars=config.review_max_chars,
            instructions_file=config.review_instructions_file,
            fix_instructions_file=config.fix_instructions_file,
        )
        self.session = AgentSession(mode=Mode.AGENT)
        self.turn_task: Optional[asyncio.Task] = None
        self._loop: Optional[AgentLoop] = None

    # ── State ────────────────────────────────────────────────────

    @property
    def busy(self) -> bool:
        return self.session.busy

    @property
    def has_continuation(self) -> bool:
        return bool(self.session.continuation)

    def threads(self) -> List[ThreadRecord]:
        return self.store.list_threads()

    def state(self) -> Dict[str, Any]:
        session = self.session
        return {
            "type": "state",
            "threadId": session.thread_id,
            "mode": session.mode.value,
            "busy": session.busy,
            "messages": [dict(m) for m in session.ui_messages],
            "todos": session.todos.to_dict(),
            "contexts": list(session.contexts),
            "approvals": self.gate.pending,
            "threads": [{"id": t.id, "title": t.title, "updatedAt": t.updated_at} for t in self.threads()],
            "hasContinuation": self.has_continuation,
            "reviewComments": [c.to_dict(self.workspace.relpath) for c in self.reviewer.threads.values()],
        }

    def post_state(self) -> None:
        self.channel.post(self.state())

    def _require_idle(self) -> None:
        if self.session.busy:
            raise SessionBusyError("A turn is already running.")

    # ── Threads ──────────────────────────────────────────────────

    def _load_thread(self, thread_id: str) -> bool:
        record = self.store.get_thread(thread_id)
        if record is None:
            return False
        session = self.session
        session.thread_id = record.id
        session.ui_messages = self.store.load_messages(record.id)
        session.todos = TodoList.from_dict(record.todos)
        session.contexts = list(record.contexts)
        session.todo_seed = None
        return True

    def ensure_ready(self) -> str:
        """Make sure a thread is active: the current one, the newest, or a new one."""
        if self.session.thread_id and self.store.get_thread(self.session.thread_id):
            return self.session.thread_id
        threads = self.threads()
        if threads:
            self._load_thread(threads[0].id)
        else:
            self._load_thread(self.store.create_thread(default_thread_title()))
        return self.session.thread_id

    def new_thread(self) -> str:
        self._require_idle()
        self.session.set_continuation(None)
        thread_id = self.store.create_thread(default_thread_title())
        self._load_thread(thread_id)
        log.info("New thread %s", thread_id)
        self.post_state()
        return thread_id

    def select_thread(self, thread_id: Any) -> bool:
        self._require_idle()
        self.session.set_continuation(None)
        key = normalize_thread_id(thread_id)
        if not key or not self._load_thread(key):
            log.warning("Unknown thread: %s", thread_id)
            return False
        log.info("Selected thread %s", key)
        self.post_state()
        return True

    def clear(self) -> None:
        self._require_idle()
        self.ensure_ready()
        self.session.set_continuation(None)
        self.session.ui_messages = []
        self.store.clear_messages(self.session.thread_id)
        self.store.touch(self.session.thread_id)
        self.post_state()

    def set_mode(self, mode: Any) -> Mode:
        self.session.mode = Mode.parse(mode)
        self.session.set_continuation(None)
        log.info("Mode: %s", self.session.mode.value)
        self.post_state()
        return self.session.mode

    def set_contexts(self, contexts: List[Dict[str, Any]]) -> None:
        self.ensure_ready()
        self.session.contexts = [c for c in contexts or [] if isinstance(c, dict)]
        self.store.update_contexts(self.session.thread_id, self.session.contexts)
        self.store.touch(self.session.thread_id)
        self.post_state()

    # ── Transcript persistence ───────────────────────────────────

    def _append(self, role: str, content: str) -> None:
        self.session.append(role, content)
        self._persist_message({"role": role, "content": content})

    def _persist_message(self, msg: Dict[str, str]) -> None:
        if self.session.thread_id:
            self.store.add_message(self.session.thread_id, msg["role"], msg["content"])
        self.post_state()

    def _persist_todos(self, items: List[TodoItem]) -> None:
        if self.session.thread_id:
            self.store.update_todos(self.session.thread_id, [item.to_dict() for item in items])

    # ── Turns ────────────────────────────────────────────────────

    async def send(self, text: str) -> Optional[TurnOutcome]:
        """Run one user turn to completion. Raises SessionBusyError while a turn is active."""
        text = (text or "").strip()
        if not text:
            return None
        self._require_idle()
        session = self.session

        is_continuation = is_continuation_request(text)
        continuation = session.continuation if is_continuation else None
        if not is_continuation:
            session.set_continuation(None)
        session.stop_requested = False
        thread_id = self.ensure_ready()

        if session.mode is Mode.AGENT:
            seeded = seed_todos_from_prompt(text)
            session.todo_seed = seeded
            if seeded:
                self._persist_todos(session.todos.apply_update(seeded))
        else:
            session.todo_seed = None

        session.busy = True
        self.post_state()
        try:
            self._append("user", text)
            self.store.update_title_from_message(thread_id, text)

            loop = AgentLoop(
                session,
                self.client,
                self.dispatcher,
                self.config,
                get_system_prompt(session.mode, self.workspace.root, session.contexts),
                on_message=self._persist_message,
                on_todos=self._persist_todos,
            )
            self._loop = loop
            log.info("Turn start: mode=%s continuation=%s text=%s",
                     session.mode.value, bool(continuation), truncate(text, 120))
            if session.mode is Mode.AGENT:
                seed = continuation + [{"role": "user", "content": text}] if continuation else None
                return await loop.run(seed)
            return await loop.run_chat()
        except Exception as e:
            if session.stop_requested:
                session.stop_requested = False
                self._append("assistant", STOPPED_MESSAGE)
                return None
            log_exception(log, "Turn failed", e)
            session.set_continuation(None)
            self._append("assistant", TURN_ERROR_MESSAGE)
            return None
        finally:
            self._loop = None
            session.busy = False
            self.store.touch(thread_id)
            self.post_state()

    def _require_no_task(self) -> None:
        self._require_idle()
        if self.turn_task is not None and not self.turn_task.done():
            # scheduled but not started yet, so ``busy`` is still False
            raise SessionBusyError("A turn is already running.")

    def start_turn(self, text: str) -> asyncio.Task:
        """Schedule ``send`` so that stop/approval messages can arrive meanwhile."""
        self._require_no_task()
        self.turn_task = asyncio.ensure_future(self.send(text))
        return self.turn_task

    def stop(self) -> bool:
        """Request a cooperative stop of the running turn."""
        session = self.session
        session.set_continuation(None)
        if not session.busy:
            return False
        session.stop_requested = True
        if self._loop:
            self._loop.abort()
        rejected = self.gate.cancel_all()
        log.info("Stop requested (%d approval(s) rejected)", rejected)
        self.post_state()
        return True

    def revert_change(self, change_id: str) -> str:
        change_id = (change_id or "").strip()
        if not change_id:
            return ""
        self._require_idle()
        self.ensure_ready()
        self.session.busy = True
        self.post_state()
        try:
            result = self.ledger.revert(change_id)
            rendered = format_tool_result("revert_change", limit_tool_output(result, self.config.tool_output_chars))
            self._append("assistant", f"Tool call: revert_change {change_id}")
            self._append("assistant", rendered)
            return rendered
        except Exception as e:
            log_exception(log, f"Revert {change_id} failed", e)
            self._append("assistant", REVERT_ERROR_MESSAGE)
            return REVERT_ERROR_MESSAGE
        finally:
            self.session.busy = False
            self.store.touch(self.session.thread_id)
            self.post_state()

    # ── Code review ──────────────────────────────────────────────

    async def _review_action(self, label: str, action):
        """Run one review step with the session marked busy; errors are posted, not raised."""
        self._require_idle()
        self.session.busy = True
        self.post_state()
        try:
            return await action()
        except ReviewError as e:
            log.warning("%s: %s", label, e)
            self.channel.post({"type": "reviewError", "message": str(e)})
        except Exception as e:
            log_exception(log, f"{label} failed", e)
            self.channel.post({"type": "reviewError", "message": REVIEW_ERROR_MESSAGE})
        finally:
            self.session.busy = False
            self.post_state()
        return None

    async def review(self, path: str, start_line: Optional[int] = None,
                     end_line: Optional[int] = None) -> Optional[ReviewResult]:
        async def action():
            result = await self.reviewer.review_file(path, start_line, end_line)
            self.channel.post({
                "type": "review",
                "path": self.workspace.relpath(result.path),
                "summary": result.summary(),
                "comments": [c.to_dict(self.workspace.relpath) for c in result.comments],
            })
            return result
        return await self._review_action("Review", action)

    async def propose_change(self, comment_id: str, reply: str = "",
                             regenerate: bool = False) -> Optional[ReviewComment]:
        async def action():
            if regenerate:
                comment = await self.reviewer.regenerate_proposed_change(comment_id, reply)
            else:
                comment = await self.reviewer.generate_proposed_change(comment_id, reply)
            self.channel.post({"type": "reviewComment", "comment": comment.to_dict(self.workspace.relpath)})
            return comment
        return await self._review_action("Proposed change", action)

    async def apply_proposed_change(self, comment_id: str) -> Optional[str]:
        """Apply a proposal; the result (with its revert tag) joins the transcript."""
        comment_id = (comment_id or "").strip()

        async def action():
            self.ensure_ready()
            result = await self.reviewer.apply_proposed_change(comment_id)
            rendered = format_tool_result("apply_proposed_change",
                                          limit_tool_output(result, self.config.tool_output_chars))
            self._append("assistant", f"Tool call: apply_proposed_change {comment_id}")
            self._append("assistant", rendered)
            self.store.touch(self.session.thread_id)
            return rendered
        return await self._review_action("Apply proposed change", action)

    def discard_review_comment(self, comment_id: str) -> bool:
        discarded = self.reviewer.discard(comment_id)
        if discarded:
            self.post_state()
        return discarded

    # ── Inbound channel messages ─────────────────────────────────

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        """Apply one inbound UI payload. ``send`` is scheduled, not awaited."""
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            return
        kind = msg["type"]
        try:
            if kind == "ready":
                self.ensure_ready()
                self.channel.set_ready()
                self.post_state()
            elif kind == "approvalResponse":
                request_id = str(msg.get("id") or "").strip()
                if request_id and self.gate.resolve(request_id, bool(msg.get("approved"))):
                    self.post_state()
            elif kind == "send":
                text = str(msg.get("text") or "").strip()
                if text:
                    self.start_turn(text)
            elif kind == "stop":
                self.stop()
            elif kind == "newThread":
                self.new_thread()
            elif kind == "selectThread":
                self.select_thread(msg.get("threadId"))
            elif kind == "setMode":
                if msg.get("mode") in ("chat", "agent"):
                    self.set_mode(msg["mode"])
            elif kind == "clearChat":
                self.clear()
            elif kind == "setContext":
                self.set_contexts(msg.get("contexts") or [])
            elif kind == "revertChange":
                self.revert_change(str(msg.get("id") or ""))
            elif kind == "review":
                self._require_no_task()
                self.turn_task = asyncio.ensure_future(
                    self.review(str(msg.get("path") or ""), msg.get("startLine"), msg.get("endLine")))
            elif kind in ("generateProposedChange", "regenerateProposedChange"):
                self._require_no_task()
                self.turn_task = asyncio.ensure_future(
                    self.propose_change(str(msg.get("id") or ""), str(msg.get("text") or ""),
                                        regenerate=kind == "regenerateProposedChange"))
            elif kind == "applyProposedChange":
                self._require_no_task()
                self.turn_task = asyncio.ensure_future(self.apply_proposed_change(str(msg.get("id") or "")))
            elif kind == "discardReviewComment":
                self.discard_review_comment(str(msg.get("id") or ""))
            elif kind == "log":
                log.info("UI: %s", truncate(str(msg.get("message") or ""), 500))
            else:
                log.debug("Ignoring UI message type %s", kind)
        except SessionBusyError as e:
            log.warning("Rejected %s: %s", kind, e)
