"""Tests for the session controller: turns, threads, stop, continuation, revert, review."""

import asyncio
import json
import os
import sys
from typing import Dict, List

import pytest

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from codeagent.channel import UIChannel
from codeagent.config import Config
from codeagent.context_management import STEP_LIMIT_MESSAGE, STOPPED_MESSAGE
from codeagent.controller import REVIEW_ERROR_MESSAGE, TURN_ERROR_MESSAGE, ChatController
from codeagent.errors import ModelTransportError, SessionBusyError
from codeagent.revert import extract_revert_ids
from codeagent.session import Mode
from codeagent.storage import MemoryThreadStore


class ScriptedClient:
    def __init__(self, replies: List[str]):
        self.replies = list(replies)
        self.calls: List[List[Dict[str, str]]] = []
        self.prompts: List[str] = []

    async def complete(self, system_prompt, messages):
        self.prompts.append(system_prompt)
        self.calls.append([dict(m) for m in messages])
        return self.replies[min(len(self.calls), len(self.replies)) - 1]


class FailingClient:
    async def complete(self, system_prompt, messages):
        raise ModelTransportError("HTTP 500 Internal Server Error: boom")


class HangingClient:
    started = None

    async def complete(self, system_prompt, messages):
        self.started.set()
        await asyncio.Event().wait()


def final(text: str) -> str:
    return json.dumps({"final": text})


def make_controller(tmp_path, client, auto_approve=True, max_steps=6, transport=None):
    config = Config(workspace_path=tmp_path, auto_approve=auto_approve, agent_max_steps=max_steps)
    posted = []
    channel = UIChannel(transport=transport or posted.append, ready=True)
    controller = ChatController(config, client, store=MemoryThreadStore(), channel=channel)
    return controller, posted


def contents(controller) -> List[str]:
    return [m["content"] for m in controller.session.ui_messages]


# ============================================================
# Turns
# ============================================================

class TestSend:
    def test_simple_turn_persists_and_titles_thread(self, tmp_path):
        controller, posted = make_controller(tmp_path, ScriptedClient([final("Hi there.")]))
        asyncio.run(controller.send("Say hello"))
        thread_id = controller.session.thread_id
        assert contents(controller) == ["Say hello", "Hi there."]
        assert controller.store.load_messages(thread_id) == controller.session.ui_messages
        assert controller.store.get_thread(thread_id).title == "Say hello"
        assert not controller.busy
        assert posted[-1]["type"] == "state" and posted[-1]["busy"] is False

    def test_blank_text_is_ignored(self, tmp_path):
        client = ScriptedClient([final("x")])
        controller, _ = make_controller(tmp_path, client)
        assert asyncio.run(controller.send("   ")) is None
        assert client.calls == []

    def test_busy_session_rejects_send(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        controller.session.busy = True
        with pytest.raises(SessionBusyError):
            asyncio.run(controller.send("hello"))

    def test_second_start_turn_is_rejected(self, tmp_path):
        client = ScriptedClient([final("only once")])
        controller, _ = make_controller(tmp_path, client)

        async def scenario():
            first = controller.start_turn("one")
            with pytest.raises(SessionBusyError):
                controller.start_turn("two")
            assert controller.turn_task is first
            return await first

        outcome = asyncio.run(scenario())
        assert outcome.message == "only once"
        assert len(client.calls) == 1
        assert contents(controller) == ["one", "only once"]

    def test_model_error_becomes_message(self, tmp_path):
        controller, _ = make_controller(tmp_path, FailingClient())
        asyncio.run(controller.send("hello"))
        assert contents(controller)[-1] == TURN_ERROR_MESSAGE
        assert not controller.busy

    def test_chat_mode_uses_read_only_prompt(self, tmp_path):
        client = ScriptedClient([final("answer")])
        controller, _ = make_controller(tmp_path, client)
        controller.set_mode("chat")
        asyncio.run(controller.send("what is this?"))
        assert '"tool":"write_file"' not in client.prompts[0]
        assert '"tool":"read_file"' in client.prompts[0]

    def test_agent_rules_reach_the_prompt(self, tmp_path):
        (tmp_path / "agent.md").write_text("Always use tabs.")
        client = ScriptedClient([final("ok")])
        controller, _ = make_controller(tmp_path, client)
        asyncio.run(controller.send("go"))
        assert "PROJECT RULES (agent.md):\nAlways use tabs." in client.prompts[0]

    def test_numbered_plan_seeds_todos(self, tmp_path):
        client = ScriptedClient([final("ok")])
        controller, _ = make_controller(tmp_path, client)
        asyncio.run(controller.send("Follow this plan:\n1. Parse input\n2. Write output"))
        stored = controller.store.get_thread(controller.session.thread_id).todos
        assert [t["text"] for t in stored] == ["Parse input", "Write output"]
        assert "Next item to execute: Parse input" in client.calls[0][-1]["content"]


class TestContinuation:
    def test_continue_resumes_saved_transcript(self, tmp_path):
        list_call = json.dumps({"toolCalls": [{"tool": "list_files", "args": {}}]})
        client = ScriptedClient([list_call, final("finished")])
        controller, _ = make_controller(tmp_path, client, max_steps=1)

        asyncio.run(controller.send("explore"))
        assert contents(controller)[-1] == STEP_LIMIT_MESSAGE
        assert controller.has_continuation
        saved = list(controller.session.continuation)

        asyncio.run(controller.send("continue"))
        assert client.calls[1] == saved + [{"role": "user", "content": "continue"}]
        assert contents(controller)[-1] == "finished"
        assert not controller.has_continuation

    def test_other_text_discards_continuation(self, tmp_path):
        list_call = json.dumps({"toolCalls": [{"tool": "list_files", "args": {}}]})
        client = ScriptedClient([list_call, final("fresh")])
        controller, _ = make_controller(tmp_path, client, max_steps=1)
        asyncio.run(controller.send("explore"))
        assert controller.has_continuation
        asyncio.run(controller.send("do something else"))
        assert client.calls[1][-1] == {"role": "user", "content": "do something else"}
        assert all(m["content"] != STEP_LIMIT_MESSAGE for m in client.calls[1])

    def test_mode_change_discards_continuation(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        controller.session.set_continuation([{"role": "user", "content": "old"}])
        assert controller.set_mode("chat") is Mode.CHAT
        assert not controller.has_continuation


class TestStop:
    def test_stop_when_idle_is_noop(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        assert controller.stop() is False
        assert not controller.session.stop_requested

    def test_stop_running_turn(self, tmp_path):
        client = HangingClient()
        controller, _ = make_controller(tmp_path, client)

        async def scenario():
            client.started = asyncio.Event()
            task = controller.start_turn("long job")
            await client.started.wait()
            assert controller.busy
            assert controller.stop() is True
            await task

        asyncio.run(scenario())
        assert contents(controller)[-1] == STOPPED_MESSAGE
        assert not controller.busy
        assert not controller.session.stop_requested

    def test_stop_rejects_pending_approval(self, tmp_path):
        write = json.dumps({"toolCalls": [{"tool": "write_file", "args": {"path": "x.txt", "content": "x"}}]})
        client = ScriptedClient([write, final("never")])
        approvals = []

        def transport(message):
            if message.get("type") == "approval":
                approvals.append(message)

        controller, _ = make_controller(tmp_path, client, auto_approve=False, transport=transport)

        async def scenario():
            task = controller.start_turn("write it")
            while not approvals:
                await asyncio.sleep(0)
            controller.stop()
            await task

        asyncio.run(scenario())
        assert not (tmp_path / "x.txt").exists()
        assert "Tool result (write_file):\nWrite canceled by user." in contents(controller)
        assert contents(controller)[-1] == STOPPED_MESSAGE
        assert len(client.calls) == 1


# ============================================================
# Approvals over the channel
# ============================================================

class TestApprovalFlow:
    def test_approval_response_message(self, tmp_path):
        write = json.dumps({"toolCalls": [{"tool": "write_file", "args": {"path": "ok.txt", "content": "y"}}]})
        client = ScriptedClient([write, final("done")])
        holder = {}

        def transport(message):
            if message.get("type") == "approval":
                assert message["title"] == "Create file?"
                reply = {"type": "approvalResponse", "id": message["id"], "approved": True}
                asyncio.ensure_future(holder["controller"].handle_message(reply))

        controller, _ = make_controller(tmp_path, client, auto_approve=False, transport=transport)
        holder["controller"] = controller
        asyncio.run(controller.send("create ok.txt"))
        assert (tmp_path / "ok.txt").read_text() == "y"
        assert contents(controller)[-1] == "done"


# ============================================================
# Threads and inbound messages
# ============================================================

class TestThreads:
    def test_ensure_ready_creates_one_thread(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        first = controller.ensure_ready()
        assert controller.ensure_ready() == first
        assert len(controller.threads()) == 1

    def test_new_and_select_thread(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("reply")]))
        asyncio.run(controller.send("first thread"))
        first = controller.session.thread_id
        second = controller.new_thread()
        assert second != first
        assert controller.session.ui_messages == []
        assert controller.select_thread(first)
        assert contents(controller) == ["first thread", "reply"]
        assert not controller.select_thread("404")
        assert controller.session.thread_id == first

    def test_clear(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("reply")]))
        asyncio.run(controller.send("hello"))
        controller.clear()
        assert controller.session.ui_messages == []
        assert controller.store.load_messages(controller.session.thread_id) == []

    def test_busy_blocks_thread_switch(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        controller.ensure_ready()
        controller.session.busy = True
        with pytest.raises(SessionBusyError):
            controller.new_thread()

    def test_handle_message_routing(self, tmp_path):
        posted = []
        config = Config(workspace_path=tmp_path, auto_approve=True)
        channel = UIChannel(transport=posted.append)
        controller = ChatController(config, ScriptedClient([final("x")]), store=MemoryThreadStore(),
                                    channel=channel)

        async def scenario():
            await controller.handle_message({"type": "ready"})
            await controller.handle_message({"type": "setMode", "mode": "chat"})
            await controller.handle_message({"type": "setContext", "contexts": [{"title": "sel", "code": "x=1"}]})
            await controller.handle_message({"type": "newThread"})
            await controller.handle_message({"type": "bogus"})
            await controller.handle_message("not a dict")

        asyncio.run(scenario())
        assert channel.ready
        assert controller.session.mode is Mode.CHAT
        assert len(controller.threads()) == 2
        state = posted[-1]
        assert state["type"] == "state"
        assert state["mode"] == "chat"
        assert len(state["threads"]) == 2

    def test_busy_rejection_does_not_raise_from_handle_message(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        controller.ensure_ready()
        controller.session.busy = True
        asyncio.run(controller.handle_message({"type": "clearChat"}))
        assert controller.session.busy


# ============================================================
# Revert
# ============================================================

class TestRevertChange:
    def test_revert_from_transcript_tag(self, tmp_path):
        write = json.dumps({"toolCalls": [{"tool": "write_file", "args": {"path": "made.txt", "content": "z"}}]})
        controller, _ = make_controller(tmp_path, ScriptedClient([write, final("done")]))
        asyncio.run(controller.send("make a file"))
        assert (tmp_path / "made.txt").exists()

        ids = [i for m in contents(controller) for i in extract_revert_ids(m)]
        assert len(ids) == 1
        result = controller.revert_change(ids[0])
        assert result == "Tool result (revert_change):\nRevert complete.\nRemoved made.txt."
        assert not (tmp_path / "made.txt").exists()
        assert contents(controller)[-2] == f"Tool call: revert_change {ids[0]}"

        again = controller.revert_change(ids[0])
        assert again.endswith("Revert failed: change not found or expired.")

    def test_revert_via_message(self, tmp_path):
        controller, _ = make_controller(tmp_path, ScriptedClient([final("x")]))
        asyncio.run(controller.handle_message({"type": "revertChange", "id": "revert_0_dead"}))
        assert contents(controller)[-1] == \
            "Tool result (revert_change):\nRevert failed: change not found or expired."


# ============================================================
# Code review
# ============================================================

def review_reply(*items) -> str:
    return json.dumps({"comments": list(items)})


RENAME = {"message": "rename", "startLine": 2, "severity": "error", "newText": "z = 2"}


class TestReview:
    def test_review_apply_and_revert(self, tmp_path):
        (tmp_path / "calc.py").write_text("x = 1\ny = 2\n")
        controller, posted = make_controller(tmp_path, ScriptedClient([review_reply(RENAME)]))
        result = asyncio.run(controller.review("calc.py"))
        comment = result.comments[0]
        reviews = [m for m in posted if m["type"] == "review"]
        assert reviews[-1]["path"] == "calc.py"
        assert reviews[-1]["comments"][0]["label"] == "Error"
        assert controller.state()["reviewComments"][0]["id"] == comment.id
        assert not controller.busy

        rendered = asyncio.run(controller.apply_proposed_change(comment.id))
        assert rendered.startswith(
            "Tool result (apply_proposed_change):\nProposed change applied to calc.py (lines 2-2).")
        assert (tmp_path / "calc.py").read_text() == "x = 1\nz = 2\n"
        assert contents(controller)[-2] == f"Tool call: apply_proposed_change {comment.id}"
        assert controller.state()["reviewComments"] == []

        ids = extract_revert_ids(contents(controller)[-1])
        assert len(ids) == 1
        controller.revert_change(ids[0])
        assert (tmp_path / "calc.py").read_text() == "x = 1\ny = 2\n"

    def test_review_error_is_posted(self, tmp_path):
        (tmp_path / "calc.py").write_text("x = 1\n")
        controller, posted = make_controller(tmp_path, ScriptedClient(["not json"]))
        assert asyncio.run(controller.review("calc.py")) is None
        errors = [m for m in posted if m["type"] == "reviewError"]
        assert errors[-1]["message"] == "Model did not return expected JSON (missing comments)."
        assert not controller.busy

    def test_model_failure_is_posted(self, tmp_path):
        (tmp_path / "calc.py").write_text("x = 1\n")
        controller, posted = make_controller(tmp_path, FailingClient())
        assert asyncio.run(controller.review("calc.py")) is None
        assert [m for m in posted if m["type"] == "reviewError"][-1]["message"] == REVIEW_ERROR_MESSAGE

    def test_busy_session_rejects_review(self, tmp_path):
        (tmp_path / "calc.py").write_text("x = 1\n")
        controller, _ = make_controller(tmp_path, ScriptedClient([review_reply(RENAME)]))
        controller.session.busy = True
        with pytest.raises(SessionBusyError):
            asyncio.run(controller.review("calc.py"))

    def test_review_messages_wait_for_approval(self, tmp_path):
        (tmp_path / "calc.py").write_text("x = 1\ny = 2\n")
        client = ScriptedClient([review_reply(RENAME)])
        holder = {"titles": []}

        def transport(message):
            if message.get("type") == "approval":
                holder["titles"].append(message["title"])
                reply = {"type": "approvalResponse", "id": message["id"], "approved": True}
                asyncio.ensure_future(holder["controller"].handle_message(reply))

        controller, _ = make_controller(tmp_path, client, auto_approve=False, transport=transport)
        holder["controller"] = controller

        async def scenario():
            await controller.handle_message({"type": "review", "path": "calc.py"})
            task = controller.turn_task
            await controller.handle_message({"type": "review", "path": "calc.py"})
            assert controller.turn_task is task
            await task
            comment_id = controller.state()["reviewComments"][0]["id"]
            await controller.handle_message({"type": "applyProposedChange", "id": comment_id})
            return await controller.turn_task

        rendered = asyncio.run(scenario())
        assert "Proposed change applied to calc.py" in rendered
        assert holder["titles"] == ["Apply proposed change?"]
        assert (tmp_path / "calc.py").read_text() == "x = 1\nz = 2\n"
        assert len(client.calls) == 1
