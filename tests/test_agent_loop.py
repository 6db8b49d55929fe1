"""Tests for the agent loop using a scripted fake model client."""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Dict, List

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from codeagent.agent_loop import (
    ALL_TODOS_DONE_MESSAGE,
    EMPTY_RESPONSE_MESSAGE,
    REPEATED_TODO_MESSAGE,
    SKIPPED_COMMAND_MESSAGE,
    AgentLoop,
    LoopState,
)
from codeagent.approval import ApprovalGate
from codeagent.channel import UIChannel
from codeagent.config import Config
from codeagent.context_management import STEP_LIMIT_MESSAGE, STOPPED_MESSAGE
from codeagent.dispatcher import ToolDispatcher
from codeagent.editor import Diagnostic, NullEditorBridge
from codeagent.revert import RevertLedger
from codeagent.session import AgentSession, Mode
from codeagent.tools.registry import ToolContext, build_default_registry
from codeagent.workspace import Workspace


# ── Fakes ────────────────────────────────────────────────────────

class ScriptedClient:
    """Returns the scripted replies in order, then keeps repeating the last one."""

    def __init__(self, replies: List[str]):
        self.replies = list(replies)
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        self.calls.append([dict(m) for m in messages])
        index = min(len(self.calls), len(self.replies)) - 1
        return self.replies[index]


class HangingClient:
    started = None

    async def complete(self, system_prompt, messages):
        self.started.set()
        await asyncio.Event().wait()


class ProblemEditor(NullEditorBridge):
    def __init__(self, diagnostics):
        self.diagnostics_list = diagnostics

    async def diagnostics(self):
        return self.diagnostics_list


def calls(*tool_calls) -> str:
    return json.dumps({"toolCalls": [{"tool": t, "args": a} for t, a in tool_calls]})


def final(text: str) -> str:
    return json.dumps({"final": text})


def todo(*items) -> str:
    return json.dumps({"todo": [{"id": i, "text": t, "status": s} for i, t, s in items]})


def build(tmp_path: Path, replies, max_steps: int = 6, editor=None, registry=None, prompt: str = "do it"):
    config = Config(workspace_path=tmp_path, agent_max_steps=max_steps)
    workspace = Workspace(tmp_path)
    ctx = ToolContext(
        workspace=workspace,
        gate=ApprovalGate(UIChannel(), auto_approve=True),
        ledger=RevertLedger(relpath=workspace.relpath),
        editor=editor or NullEditorBridge(),
    )
    dispatcher = ToolDispatcher(registry or build_default_registry(), ctx)
    session = AgentSession(thread_id="1", mode=Mode.AGENT)
    session.append("user", prompt)
    client = replies if hasattr(replies, "complete") else ScriptedClient(replies)
    emitted = []
    loop = AgentLoop(session, client, dispatcher, config, "SYSTEM", on_message=emitted.append)
    return loop, session, client, emitted


def contents(session: AgentSession) -> List[str]:
    return [m["content"] for m in session.ui_messages]


# ============================================================
# Agent mode
# ============================================================

class TestAgentTurns:
    def test_final_reply(self, tmp_path):
        loop, session, client, emitted = build(tmp_path, [final("All good.")])
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.FINAL
        assert outcome.message == "All good."
        assert contents(session) == ["do it", "All good."]
        assert [m["content"] for m in emitted] == ["All good."]
        assert client.calls[0] == [{"role": "user", "content": "do it"}]

    def test_read_then_final(self, tmp_path):
        (tmp_path / "a.txt").write_text("hello")
        loop, session, client, _ = build(tmp_path, [calls(("read_file", {"path": "a.txt"})), final("Read it.")])
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.FINAL
        assert contents(session) == [
            "do it",
            "Tool call: read_file a.txt",
            "Tool result (read_file):\n```\n1 | hello\n```",
            "Read it.",
        ]
        second = client.calls[1]
        assert second[-1] == {"role": "user", "content": "Tool result (read_file):\n```\n1 | hello\n```"}
        assert second[-2]["role"] == "assistant"

    def test_prose_with_calls_is_shown(self, tmp_path):
        reply = "Looking now.\n[TOOL_CALLS]list_files[ARGS]{}"
        loop, session, _, _ = build(tmp_path, [reply, final("ok")])
        asyncio.run(loop.run())
        assert contents(session)[1] == "Looking now."
        assert contents(session)[2] == "Tool call: list_files"

    def test_mutation_triggers_verification(self, tmp_path):
        loop, session, _, _ = build(tmp_path, [
            calls(("write_file", {"path": "new.txt", "content": "x"})),
            final("Created."),
        ])
        asyncio.run(loop.run())
        msgs = contents(session)
        assert msgs[1] == "Tool call: write_file new.txt"
        assert msgs[2].startswith("Tool result (write_file):\nWrite succeeded: new.txt.")
        assert msgs[3].startswith("Tool result (read_dir):\nTree for . (depth 3):")
        assert msgs[4] == "Tool result (list_files):\nFiles (1):\nnew.txt"
        assert msgs[5] == "Created."
        assert (tmp_path / "new.txt").read_text() == "x"

    def test_no_verification_when_model_already_listed(self, tmp_path):
        loop, session, _, _ = build(tmp_path, [
            calls(("write_file", {"path": "n.txt", "content": "x"}), ("list_files", {})),
            final("done"),
        ])
        asyncio.run(loop.run())
        assert not any(m.startswith("Tool result (read_dir)") for m in contents(session))

    def test_unparsed_reply_is_shown_verbatim(self, tmp_path):
        loop, session, _, _ = build(tmp_path, ["I think you should refactor."])
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.UNPARSED
        assert contents(session)[-1] == "I think you should refactor."

    def test_empty_reply(self, tmp_path):
        loop, session, _, _ = build(tmp_path, ["   "])
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.EMPTY_RESPONSE
        assert contents(session)[-1] == EMPTY_RESPONSE_MESSAGE

    def test_unknown_tool_result_flows_back(self, tmp_path):
        loop, session, client, _ = build(tmp_path, [calls(("teleport", {})), final("sorry")])
        asyncio.run(loop.run())
        assert "Tool result (teleport):\nUnknown tool: teleport" in contents(session)
        assert len(client.calls) == 2


class TestTodoHandling:
    def test_todo_plan_completes(self, tmp_path):
        loop, session, client, _ = build(tmp_path, [
            todo(("1", "Write file", "pending")),
            todo(("1", "Write file", "done")),
        ])
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.FINAL
        assert outcome.message == ALL_TODOS_DONE_MESSAGE
        planner = client.calls[1][-1]
        assert planner["role"] == "user"
        assert "Next item to execute: Write file" in planner["content"]
        assert not session.todos.has_pending()

    def test_repeated_todo_corrected_once_then_step_limit(self, tmp_path):
        same = todo(("1", "Do the thing", "pending"))
        loop, session, client, _ = build(tmp_path, [same], max_steps=5)
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.STEP_LIMIT
        assert loop.corrections == 1
        assert len(client.calls) == 5
        last_request = client.calls[-1]
        assert sum(1 for m in last_request if m["content"] == REPEATED_TODO_MESSAGE) == 1
        assert contents(session)[-1] == STEP_LIMIT_MESSAGE
        assert session.continuation

    def test_todo_with_prose_ends_turn(self, tmp_path):
        reply = 'Here is the plan.\n{"todo":[{"id":"1","text":"x","status":"pending"}]}'
        loop, session, _, _ = build(tmp_path, [reply])
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.FINAL
        assert contents(session)[-1] == "Here is the plan."

    def test_final_with_todo_updates_list(self, tmp_path):
        reply = json.dumps({"final": "done", "todo": [{"id": "1", "text": "a", "status": "done"}]})
        loop, session, _, _ = build(tmp_path, [reply])
        asyncio.run(loop.run())
        assert session.todos.to_dict() == [{"id": "1", "text": "a", "status": "done"}]


class TestCommandDedup:
    def _registry(self, counter):
        registry = build_default_registry()

        async def fake_run_command(ctx, args):
            counter.append(args.get("command"))
            return "Command succeeded (exit 0):\nok"

        registry.register("run_command", fake_run_command)
        return registry

    def test_identical_command_skipped(self, tmp_path):
        ran = []
        cmd = ("run_command", {"command": "pytest"})
        loop, session, _, _ = build(tmp_path, [calls(cmd, cmd), final("ok")], registry=self._registry(ran))
        asyncio.run(loop.run())
        assert ran == ["pytest"]
        assert f"Tool result (run_command):\n```\n{SKIPPED_COMMAND_MESSAGE}\n```" in contents(session)

    def test_command_reruns_after_file_change(self, tmp_path):
        ran = []
        cmd = ("run_command", {"command": "pytest"})
        write = ("write_file", {"path": "f.py", "content": "x = 1\n"})
        loop, _, _, _ = build(tmp_path, [calls(cmd, write, cmd), final("ok")], registry=self._registry(ran))
        asyncio.run(loop.run())
        assert ran == ["pytest", "pytest"]

    def test_dedup_spans_steps(self, tmp_path):
        ran = []
        cmd = ("run_command", {"command": "make"})
        loop, _, _, _ = build(tmp_path, [calls(cmd), calls(cmd), final("ok")], registry=self._registry(ran))
        asyncio.run(loop.run())
        assert ran == ["make"]


class TestStopAndProblems:
    def test_stop_before_first_step(self, tmp_path):
        loop, session, client, _ = build(tmp_path, [final("never")])
        session.stop_requested = True
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.STOPPED
        assert contents(session)[-1] == STOPPED_MESSAGE
        assert client.calls == []
        assert not session.stop_requested

    def test_abort_cancels_model_request(self, tmp_path):
        client = HangingClient()
        loop, session, _, _ = build(tmp_path, client)

        async def scenario():
            client.started = asyncio.Event()
            task = asyncio.ensure_future(loop.run())
            await client.started.wait()
            loop.abort()
            return await task

        outcome = asyncio.run(scenario())
        assert outcome.state is LoopState.STOPPED
        assert contents(session)[-1] == STOPPED_MESSAGE

    def test_stop_between_tool_calls(self, tmp_path):
        registry = build_default_registry()
        ran = []
        holder = {}

        async def stopping_read(ctx, args):
            ran.append(args.get("path"))
            holder["session"].stop_requested = True
            return "read"

        registry.register("read_file", stopping_read)
        loop, session, client, _ = build(tmp_path, [
            calls(("read_file", {"path": "a"}), ("read_file", {"path": "b"})),
            final("never"),
        ], registry=registry)
        holder["session"] = session
        outcome = asyncio.run(loop.run())
        assert ran == ["a"]
        assert outcome.state is LoopState.STOPPED
        assert len(client.calls) == 1

    def test_stop_during_last_step_is_not_step_limit(self, tmp_path):
        registry = build_default_registry()
        holder = {}

        async def stopping_read(ctx, args):
            holder["session"].stop_requested = True
            return "read"

        registry.register("read_file", stopping_read)
        loop, session, client, _ = build(tmp_path, [calls(("read_file", {"path": "a"}))],
                                         max_steps=1, registry=registry)
        holder["session"] = session
        outcome = asyncio.run(loop.run())
        assert outcome.state is LoopState.STOPPED
        assert contents(session)[-1] == STOPPED_MESSAGE
        assert STEP_LIMIT_MESSAGE not in contents(session)
        assert session.continuation is None
        assert not session.stop_requested

    def test_problems_appended_after_mutation(self, tmp_path):
        editor = ProblemEditor([Diagnostic(tmp_path / "a.py", 1, 1, "error", "bad")])
        loop, session, client, _ = build(tmp_path, [
            calls(("write_file", {"path": "a.py", "content": "x ="})),
            final("first"),
            final("fixed"),
        ], editor=editor)
        outcome = asyncio.run(loop.run())
        assert outcome.message == "fixed"
        problems = [m for m in contents(session) if m.startswith("Tool result (problems)")]
        assert problems == ["Tool result (problems):\nWorkspace problems (1):\n- a.py:1:1 error: bad"]
        assert "first" not in contents(session)
        assert len(client.calls) == 3

    def test_no_problems_without_mutation(self, tmp_path):
        editor = ProblemEditor([Diagnostic(tmp_path / "a.py", 1, 1, "error", "bad")])
        loop, session, client, _ = build(tmp_path, [final("done")], editor=editor)
        asyncio.run(loop.run())
        assert len(client.calls) == 1

    def test_continuation_seed_is_used(self, tmp_path):
        loop, session, client, _ = build(tmp_path, [final("resumed")])
        seed = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "{}"},
                {"role": "user", "content": "continue"}]
        asyncio.run(loop.run(seed))
        assert client.calls[0] == seed


# ============================================================
# Chat mode
# ============================================================

class TestChatMode:
    def test_single_call_with_tools(self, tmp_path):
        (tmp_path / "a.txt").write_text("hi")
        loop, session, client, _ = build(tmp_path, [calls(("read_file", {"path": "a.txt"}))])
        outcome = asyncio.run(loop.run_chat())
        assert len(client.calls) == 1
        assert outcome.state is LoopState.FINAL
        assert contents(session)[-2:] == ["Tool call: read_file a.txt", "Tool result (read_file):\n```\n1 | hi\n```"]

    def test_plain_text_reply(self, tmp_path):
        loop, session, _, _ = build(tmp_path, ["Just an answer."])
        asyncio.run(loop.run_chat())
        assert contents(session)[-1] == "Just an answer."

    def test_bare_todo_shows_nothing(self, tmp_path):
        loop, session, _, _ = build(tmp_path, [todo(("1", "x", "pending"))])
        outcome = asyncio.run(loop.run_chat())
        assert outcome.message == ""
        assert contents(session) == ["do it"]
        assert len(session.todos) == 1

    def test_empty_json_reply(self, tmp_path):
        loop, session, _, _ = build(tmp_path, ['{"final": ""}'])
        asyncio.run(loop.run_chat())
        assert contents(session)[-1] == '{"final": ""}'
