"""The agent loop: model call, parse, act, repeat.

One ``AgentLoop`` drives one turn of one session. States::

    AWAITING_MODEL -> PARSING -> FINAL | TOOL_EXECUTING | TODO_ONLY | UNPARSED

plus the terminal ``STOPPED``, ``STEP_LIMIT`` and ``EMPTY_RESPONSE``.
``TOOL_EXECUTING`` and a still-pending ``TODO_ONLY`` go back to
``AWAITING_MODEL``. Transcript entries are appended strictly in
execution order; every append is reported through ``on_message``.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import Config
from .context_management import (
    STEP_LIMIT_MESSAGE,
    STOPPED_MESSAGE,
    build_agent_model_messages,
    limit_tool_output,
    trim_messages_for_model,
)
from .dispatcher import (
    ToolDispatcher,
    command_signature,
    describe_tool_call,
    format_tool_result,
    normalize_tool_call,
)
from .logger import get_logger, truncate
from .parser import ParsedTurn, ToolCall, TurnKind, parse_response
from .session import AgentSession
from .todo import TodoItem, todo_signature

log = get_logger("agent")

EMPTY_RESPONSE_MESSAGE = "Error: model returned an empty response. Try another model or check the endpoint."
ALL_TODOS_DONE_MESSAGE = "All TODO items completed."
REPEATED_TODO_MESSAGE = (
    "You are repeating the TODO list without acting. "
    "Use tools to complete the next item now. Do not return only TODO JSON."
)
SKIPPED_COMMAND_MESSAGE = (
    "Skipped: command already run with the same args and no file changes since then. "
    "Make a change or ask to force a rerun."
)
EMPTY_CHAT_MESSAGE = "(empty response)"

VERIFY_TOOLS = {"read_dir", "list_files"}
VERIFY_CALLS = [
    ToolCall("read_dir", {"path": ".", "maxDepth": 3, "maxEntries": 400}),
    ToolCall("list_files", {"include": "**/*", "exclude": "**/node_modules/**", "maxResults": 200}),
]
MAX_PROBLEMS = 50


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    PARSING = "parsing"
    TOOL_EXECUTING = "tool_executing"
    TODO_ONLY = "todo_only"
    FINAL = "final"
    UNPARSED = "unparsed"
    STOPPED = "stopped"
    STEP_LIMIT = "step_limit"
    EMPTY_RESPONSE = "empty_response"


TERMINAL_STATES = {
    LoopState.FINAL, LoopState.UNPARSED, LoopState.STOPPED,
    LoopState.STEP_LIMIT, LoopState.EMPTY_RESPONSE,
}


@dataclass
class TurnOutcome:
    """How a turn ended and the last message it appended."""
    state: LoopState
    message: str = ""
    steps: int = 0


class AgentLoop:
    """Drives a session through model calls and tool executions.

    ``client`` is anything with ``async complete(system_prompt, messages) -> str``.
    ``abort()`` cancels the in-flight model request; the turn then ends
    as ``STOPPED``.
    """

    def __init__(
        self,
        session: AgentSession,
        client,
        dispatcher: ToolDispatcher,
        config: Config,
        system_prompt: str,
        on_message: Optional[Callable[[Dict[str, str]], None]] = None,
        on_todos: Optional[Callable[[List[TodoItem]], None]] = None,
    ):
        self.session = session
        self.client = client
        self.dispatcher = dispatcher
        self.config = config
        self.system_prompt = system_prompt
        self.on_message = on_message
        self.on_todos = on_todos
        self.state = LoopState.AWAITING_MODEL
        self.model_messages: List[Dict[str, str]] = []
        self.corrections = 0
        self._model_task: Optional[asyncio.Future] = None
        self._aborted = False

    # ── Plumbing ─────────────────────────────────────────────────

    def _emit(self, content: str) -> Dict[str, str]:
        msg = self.session.append("assistant", content)
        if self.on_message:
            self.on_message(msg)
        return msg

    def _push_model(self, role: str, content: str) -> None:
        self.model_messages.append({"role": role, "content": content})
        self.model_messages = trim_messages_for_model(self.model_messages, self.config.chat_history_chars)

    def _tool_result(self, tool: str, text: str) -> str:
        rendered = format_tool_result(tool, limit_tool_output(text, self.config.tool_output_chars))
        self._emit(rendered)
        self._push_model("user", rendered)
        return rendered

    def _apply_todo(self, todo: Optional[List[TodoItem]]) -> None:
        incoming = todo or self.session.todo_seed
        if not incoming:
            return
        items = self.session.todos.apply_update(incoming)
        if self.on_todos:
            self.on_todos(items)

    def abort(self) -> None:
        self._aborted = True
        self.session.stop_requested = True
        if self._model_task and not self._model_task.done():
            self._model_task.cancel()

    async def _call_model(self, messages: List[Dict[str, str]]) -> Optional[str]:
        """Model reply text, or None when the request was aborted by ``abort()``."""
        self.state = LoopState.AWAITING_MODEL
        self._model_task = asyncio.ensure_future(self.client.complete(self.system_prompt, messages))
        try:
            return await self._model_task
        except asyncio.CancelledError:
            if self._aborted:
                log.info("Model request aborted")
                return None
            raise
        finally:
            self._model_task = None

    # ── Terminal transitions ─────────────────────────────────────

    def _end(self, state: LoopState, content: str, steps: int) -> TurnOutcome:
        if state is not LoopState.STOPPED and self.session.stop_requested:
            return self._stopped(steps)
        self.state = state
        self.session.set_continuation(None)
        self._emit(content)
        log.info("Turn ended: %s after %d step(s)", state.value, steps)
        return TurnOutcome(state, content, steps)

    def _stopped(self, steps: int) -> TurnOutcome:
        self.session.stop_requested = False
        self.state = LoopState.STOPPED
        self.session.set_continuation(None)
        self._emit(STOPPED_MESSAGE)
        log.info("Turn stopped after %d step(s)", steps)
        return TurnOutcome(LoopState.STOPPED, STOPPED_MESSAGE, steps)

    async def _append_problems(self) -> bool:
        """Deferred verification. True when diagnostics were appended and the loop should go on."""
        if not self.session.mutation_since_problems or self.session.todos.has_pending():
            return False
        problems = await self.dispatcher.collect_problems(MAX_PROBLEMS)
        if not problems:
            return False
        self.session.mutation_since_problems = False
        rendered = format_tool_result("problems", f"Workspace problems ({len(problems)}):\n" + "\n".join(problems))
        self._emit(rendered)
        self._push_model("user", rendered)
        log.info("Appended %d workspace problem(s)", len(problems))
        return True

    # ── Tool execution ───────────────────────────────────────────

    async def _run_tool_calls(self, calls: List[ToolCall]) -> None:
        self.state = LoopState.TOOL_EXECUTING
        session = self.session
        did_mutate = False
        did_verify = False
        for raw_call in calls:
            if session.stop_requested:
                break
            call = normalize_tool_call(raw_call)
            self._emit(describe_tool_call(call))

            mutating = self.dispatcher.is_mutating(call)
            if mutating:
                did_mutate = True
                session.mutation_since_problems = True
            if call.tool in VERIFY_TOOLS:
                did_verify = True

            if call.tool == "run_command":
                signature = command_signature(call.args)
                if signature == session.last_command_signature and not session.saw_mutation_since_command:
                    log.info("Skipping repeated command: %s", truncate(signature, 200))
                    self._tool_result("run_command", SKIPPED_COMMAND_MESSAGE)
                    continue
                result = await self.dispatcher.execute(call)
                session.last_command_signature = signature
                session.saw_mutation_since_command = False
                self._tool_result(call.tool, result)
                continue

            result = await self.dispatcher.execute(call)
            self._tool_result(call.tool, result)
            if mutating:
                session.saw_mutation_since_command = True

        if did_mutate and not did_verify and not session.stop_requested:
            for call in VERIFY_CALLS:
                self._tool_result(call.tool, await self.dispatcher.execute(call))

    # ── Agent mode ───────────────────────────────────────────────

    async def run(self, model_seed: Optional[List[Dict[str, str]]] = None) -> TurnOutcome:
        """Run agent steps until a terminal state.

        ``model_seed`` is the model-facing transcript to start from (a saved
        continuation plus the new user message); without one the transcript
        is rebuilt from ``session.ui_messages``.
        """
        session = self.session
        session.reset_turn_flags()
        limit = self.config.chat_history_chars
        seed = list(model_seed) if model_seed else build_agent_model_messages(session.ui_messages)
        self.model_messages = trim_messages_for_model(seed, limit)
        last_todo_signature: Optional[str] = None

        max_steps = self.config.agent_max_steps
        for step in range(1, max_steps + 1):
            if session.stop_requested:
                return self._stopped(step - 1)

            planner = session.todos.planner_instruction()
            request = self.model_messages + [{"role": "user", "content": planner}] if planner else self.model_messages
            log.debug("Step %d/%d: %d model message(s), planner=%s", step, max_steps, len(request), bool(planner))
            text = await self._call_model(trim_messages_for_model(request, limit))
            if text is None:
                return self._stopped(step)
            if not text.strip():
                return self._end(LoopState.EMPTY_RESPONSE, EMPTY_RESPONSE_MESSAGE, step)

            self.state = LoopState.PARSING
            turn = parse_response(text)
            log.debug("Step %d parsed as %s", step, turn.kind.value)
            self._push_model("assistant", text)

            if turn.kind is TurnKind.UNPARSED:
                return self._end(LoopState.UNPARSED, text, step)

            if turn.kind is TurnKind.FINAL:
                self._apply_todo(turn.todo)
                if await self._append_problems():
                    continue
                return self._end(LoopState.FINAL, turn.final or "", step)

            if turn.kind is TurnKind.TOOL_CALLS:
                last_todo_signature = None
                self._apply_todo(turn.todo)
                if turn.text and turn.text.strip():
                    self._emit(turn.text.strip())
                await self._run_tool_calls(turn.tool_calls)
                continue

            # todo-only reply
            self.state = LoopState.TODO_ONLY
            self._apply_todo(turn.todo)
            if not turn.bare_todo:
                if await self._append_problems():
                    continue
                return self._end(LoopState.FINAL, turn.display_text or text, step)

            signature = todo_signature(turn.todo or [])
            if signature == last_todo_signature and self.corrections == 0:
                self.corrections += 1
                log.info("Model repeated its TODO list; sending corrective instruction")
                self._push_model("user", REPEATED_TODO_MESSAGE)
            last_todo_signature = signature

            if not session.todos.has_pending():
                if await self._append_problems():
                    continue
                return self._end(LoopState.FINAL, ALL_TODOS_DONE_MESSAGE, step)

        if session.stop_requested:
            return self._stopped(max_steps)
        session.set_continuation(self.model_messages)
        self.state = LoopState.STEP_LIMIT
        self._emit(STEP_LIMIT_MESSAGE)
        log.info("Step limit (%d) reached; continuation saved (%d messages)", max_steps, len(self.model_messages))
        return TurnOutcome(LoopState.STEP_LIMIT, STEP_LIMIT_MESSAGE, max_steps)

    # ── Chat mode ────────────────────────────────────────────────

    async def run_chat(self) -> TurnOutcome:
        """Single model call; tool calls in the reply run once, no follow-up call."""
        session = self.session
        session.set_continuation(None)
        messages = trim_messages_for_model(
            [{"role": m["role"], "content": m["content"]} for m in session.ui_messages],
            self.config.chat_history_chars,
        )
        text = await self._call_model(messages)
        if text is None:
            return self._stopped(1)
        if not text.strip():
            return self._end(LoopState.EMPTY_RESPONSE, EMPTY_RESPONSE_MESSAGE, 1)

        turn: ParsedTurn = parse_response(text)
        self._apply_todo(turn.todo)
        if turn.kind is TurnKind.TOOL_CALLS:
            self.state = LoopState.TOOL_EXECUTING
            last = ""
            for raw_call in turn.tool_calls:
                if session.stop_requested:
                    return self._stopped(1)
                call = normalize_tool_call(raw_call)
                self._emit(describe_tool_call(call))
                last = self._tool_result(call.tool, await self.dispatcher.execute(call))
            self.state = LoopState.FINAL
            return TurnOutcome(LoopState.FINAL, last, 1)

        if turn.bare_todo:
            self.state = LoopState.FINAL
            return TurnOutcome(LoopState.FINAL, "", 1)
        if turn.kind is TurnKind.FINAL and turn.final:
            return self._end(LoopState.FINAL, turn.final, 1)
        return self._end(LoopState.FINAL, turn.display_text.strip() or EMPTY_CHAT_MESSAGE, 1)
