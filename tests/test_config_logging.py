"""Tests for configuration, logging helpers, context budgets, prompts and the LLM client."""

import asyncio
import json
import logging
import os
import sys

import httpx
import pytest

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from codeagent.config import Config, get_workspace_config_path, load_json_config
from codeagent.context_management import (
    STEP_LIMIT_MESSAGE,
    STOPPED_MESSAGE,
    build_agent_model_messages,
    is_continuation_request,
    limit_tool_output,
    trim_messages_for_model,
)
from codeagent.errors import ModelTransportError
from codeagent.llm_client import LLMClient, extract_assistant_text
from codeagent.logger import OutputBuffer, init_logging, log_exception, truncate
from codeagent.prompts import get_system_prompt, load_agent_rules, validate_examples
from codeagent.session import Mode

CONFIG_KEYS = (
    "api_url", "api_key", "model", "temperature", "request_timeout",
    "chat_history_chars", "agent_max_steps", "tool_output_chars",
    "max_reverts", "auto_approve", "db_path", "workspace",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolated HOME and no CODEAGENT_* variables (including ones a .env load adds)."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    (tmp_path / "home").mkdir()
    for key in CONFIG_KEYS:
        name = f"CODEAGENT_{key.upper()}"
        monkeypatch.setenv(name, "x")
        monkeypatch.delenv(name)
    return monkeypatch


# ============================================================
# Config
# ============================================================

class TestConfig:
    def test_defaults_and_clamps(self, tmp_path):
        config = Config(workspace_path=tmp_path, agent_max_steps=99, tool_output_chars=5,
                        chat_history_chars=-3, max_reverts=0)
        assert config.agent_max_steps == 50
        assert config.tool_output_chars == 200
        assert config.chat_history_chars == 0
        assert config.max_reverts == 1
        assert config.db_path == tmp_path / ".codeagent" / "chat.db"
        assert Config(workspace_path=tmp_path, agent_max_steps=0).agent_max_steps == 1

    def test_from_dict(self, tmp_path):
        config = Config.from_dict(
            {"model": "qwen", "agent_max_steps": "9", "auto_approve": "yes", "temperature": "0.5"},
            workspace=tmp_path,
        )
        assert config.model == "qwen"
        assert config.agent_max_steps == 9
        assert config.auto_approve is True
        assert config.temperature == 0.5
        assert config.workspace_path == tmp_path

    def test_load_json_config_tolerates_garbage(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{nope")
        assert load_json_config(bad) == {}
        assert load_json_config(tmp_path / "missing.json") == {}

    def test_workspace_overrides_global(self, clean_env, tmp_path):
        home = tmp_path / "home"
        (home / ".codeagent.json").write_text(json.dumps({"model": "global", "api_key": "k"}))
        ws = tmp_path / "ws"
        path = get_workspace_config_path(ws)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"model": "local"}))

        config = Config.from_json(ws)
        assert config.model == "local"
        assert config.api_key == "k"

    def test_env_overrides_json(self, clean_env, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (tmp_path / "home" / ".codeagent.json").write_text(json.dumps({"model": "global"}))
        env_file = tmp_path / ".env"
        env_file.write_text("CODEAGENT_AGENT_MAX_STEPS=12\n")
        clean_env.setenv("CODEAGENT_MODEL", "from-env")

        config = Config.from_env(ws, env_path=env_file)
        assert config.model == "from-env"
        assert config.agent_max_steps == 12
        assert config.workspace_path == ws

    def test_validate(self, tmp_path):
        assert Config(workspace_path=tmp_path).validate()
        with pytest.raises(ValueError, match="API URL"):
            Config(workspace_path=tmp_path, api_url="").validate()
        with pytest.raises(ValueError, match="Model"):
            Config(workspace_path=tmp_path, model="").validate()


# ============================================================
# Logging helpers
# ============================================================

class TestOutputBuffer:
    def test_evicts_oldest_chunks(self):
        buf = OutputBuffer(limit=10)
        for chunk in ("aaaa", "bbbb", "cccc"):
            buf.append(chunk)
        assert buf.size == 8
        assert buf.read(100) == ("bbbbcccc", 8, False)

    def test_head_and_tail(self):
        buf = OutputBuffer(limit=100)
        buf.append("hello world")
        assert buf.read(5) == ("world", 11, True)
        assert buf.read(5, tail=False) == ("hello", 11, True)
        buf.clear()
        assert buf.read(5) == ("", 0, False)

    def test_works_as_logging_handler(self):
        buf = OutputBuffer(limit=10_000, level=logging.DEBUG)
        logger = logging.getLogger("codeagent_test.capture")
        logger.setLevel(logging.DEBUG)
        logger.addHandler(buf)
        try:
            try:
                raise KeyError("boom")
            except KeyError as e:
                log_exception(logger, "Lookup failed", e)
        finally:
            logger.removeHandler(buf)
        text, _, _ = buf.read(10_000)
        assert "Lookup failed: 'boom'" in text
        assert "Traceback" in text


class TestLoggingHelpers:
    def test_truncate(self):
        assert truncate("") == "(empty)"
        assert truncate("a\nb") == "a\\nb"
        assert truncate("x" * 10, 4) == "xxxx...[10 chars]"

    def test_init_logging_creates_workspace_dir(self, tmp_path):
        init_logging(str(tmp_path))
        assert (tmp_path / ".codeagent").is_dir()


# ============================================================
# Context budgets
# ============================================================

def msgs(*contents):
    return [{"role": "user", "content": c} for c in contents]


class TestContextManagement:
    def test_limit_tool_output(self):
        assert limit_tool_output("short", 500) == "short"
        assert limit_tool_output(None) == ""
        assert limit_tool_output("x" * 300, 50) == "x" * 200 + "\n...[truncated]"

    def test_trim_keeps_newest_that_fit(self):
        assert trim_messages_for_model(msgs("aaaa", "bbbb", "cc"), 6) == msgs("bbbb", "cc")

    def test_trim_skips_oversized_middle(self):
        assert trim_messages_for_model(msgs("aaa", "bbbbb", "cc"), 6) == msgs("aaa", "cc")

    def test_trim_cuts_oversized_last_message(self):
        assert trim_messages_for_model(msgs("x", "0123456789"), 4) == msgs("6789")

    def test_trim_zero_budget_keeps_last(self):
        assert trim_messages_for_model(msgs("a", "b"), 0) == msgs("b")
        assert trim_messages_for_model([], 10) == []

    def test_build_agent_model_messages(self):
        ui = [
            {"role": "user", "content": "do it"},
            {"role": "assistant", "content": "Tool call: read_file a.py"},
            {"role": "assistant", "content": "Tool result (read_file):\n```\n1 | x\n```"},
            {"role": "assistant", "content": STEP_LIMIT_MESSAGE},
            {"role": "assistant", "content": STOPPED_MESSAGE},
            {"role": "assistant", "content": "Done."},
        ]
        assert build_agent_model_messages(ui) == [
            {"role": "user", "content": "do it"},
            {"role": "user", "content": "Tool result (read_file):\n```\n1 | x\n```"},
            {"role": "assistant", "content": "Done."},
        ]

    @pytest.mark.parametrize("text,expected", [
        ("continue", True),
        ("Please continue.", True),
        ("  KEEP GOING ", True),
        ("next", True),
        ("continue with the tests", False),
        ("", False),
    ])
    def test_continuation_request(self, text, expected):
        assert is_continuation_request(text) is expected


# ============================================================
# Prompts
# ============================================================

class TestPrompts:
    def test_every_tool_example_is_json(self):
        assert validate_examples() == []

    def test_chat_prompt_is_read_only(self):
        prompt = get_system_prompt(Mode.CHAT)
        assert '"tool":"read_file"' in prompt
        assert '"tool":"write_file"' not in prompt
        assert '"tool":"run_command"' not in prompt

    def test_agent_prompt_has_all_tools_and_todo_protocol(self):
        prompt = get_system_prompt(Mode.AGENT)
        assert '"tool":"write_file"' in prompt
        assert '"tool":"run_command"' in prompt
        assert '{"todo":[' in prompt

    def test_rules_and_context(self, tmp_path):
        (tmp_path / "agent.md").write_text("  Use pytest.  \n")
        assert load_agent_rules(tmp_path) == "Use pytest."
        prompt = get_system_prompt(
            "agent", tmp_path,
            [{"title": "Selection", "filePath": "a.py", "code": "x = 1"}],
        )
        assert "PROJECT RULES (agent.md):\nUse pytest." in prompt
        assert "CONTEXT:\nContext: Selection\nFile: a.py\nSelected code:\nx = 1" in prompt

    def test_no_rules_file(self, tmp_path):
        assert load_agent_rules(tmp_path) == ""
        assert "PROJECT RULES" not in get_system_prompt("chat", tmp_path)


# ============================================================
# LLM client
# ============================================================

class TestExtractAssistantText:
    @pytest.mark.parametrize("data,expected", [
        ({"choices": [{"message": {"content": "openai"}}]}, "openai"),
        ({"choices": [{"text": "legacy"}]}, "legacy"),
        ({"message": {"content": "ollama"}}, "ollama"),
        ({"response": "generate"}, "generate"),
        ({"content": "bare"}, "bare"),
        ({"choices": []}, ""),
        ("not a dict", ""),
    ])
    def test_shapes(self, data, expected):
        assert extract_assistant_text(data) == expected


def run_client(config, handler, messages=None):
    async def go():
        async with LLMClient(config, transport=httpx.MockTransport(handler)) as client:
            return await client.complete("SYSTEM", messages or [{"role": "user", "content": "hi"}])
    return asyncio.run(go())


class TestLLMClient:
    def test_request_shape(self, tmp_path):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "pong"}}]})

        config = Config(workspace_path=tmp_path, api_url="http://model.test/v1/", api_key="sk-1", model="m1")
        assert run_client(config, handler) == "pong"
        assert seen["url"] == "http://model.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-1"
        assert seen["body"]["model"] == "m1"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "SYSTEM"},
            {"role": "user", "content": "hi"},
        ]

    def test_no_key_no_auth_header(self, tmp_path):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"message": {"content": "ok"}})

        assert run_client(Config(workspace_path=tmp_path), handler) == "ok"
        assert seen["auth"] is None

    def test_http_error(self, tmp_path):
        def handler(request):
            return httpx.Response(500, text="exploded")

        with pytest.raises(ModelTransportError, match="HTTP 500 Internal Server Error: exploded"):
            run_client(Config(workspace_path=tmp_path), handler)

    def test_invalid_json(self, tmp_path):
        def handler(request):
            return httpx.Response(200, text="<html>")

        with pytest.raises(ModelTransportError, match="Invalid JSON"):
            run_client(Config(workspace_path=tmp_path), handler)

    def test_timeout(self, tmp_path):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ModelTransportError, match="Request timed out"):
            run_client(Config(workspace_path=tmp_path), handler)

    def test_requires_context_manager(self, tmp_path):
        client = LLMClient(Config(workspace_path=tmp_path))
        with pytest.raises(RuntimeError, match="not initialized"):
            asyncio.run(client.complete("s", []))
