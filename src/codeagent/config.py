"""Configuration management for the agent."""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from dotenv import load_dotenv

DEFAULT_API_URL = "http://127.0.0.1:11434/v1"
DEFAULT_MODEL = "llama3.1"


def get_global_config_path() -> Path:
    """Get path to global config: ~/.codeagent.json"""
    return Path.home() / ".codeagent.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.codeagent/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".codeagent" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, IOError):
            pass
    return {}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class Config:
    """Configuration for the coding agent."""

    api_url: str = DEFAULT_API_URL
    api_key: str = ""
    model: str = DEFAULT_MODEL
    temperature: float = 0.2
    request_timeout: float = 120.0
    chat_history_chars: int = 32000
    agent_max_steps: int = 6
    tool_output_chars: int = 12000
    max_reverts: int = 40
    auto_approve: bool = False
    review_max_chars: int = 80000
    review_instructions_file: str = ""
    fix_instructions_file: str = ""
    workspace_path: Path = field(default_factory=lambda: Path.cwd())
    db_path: Optional[Path] = None

    def __post_init__(self):
        self.workspace_path = Path(self.workspace_path)
        self.agent_max_steps = min(50, max(1, int(self.agent_max_steps)))
        self.chat_history_chars = max(0, int(self.chat_history_chars))
        self.tool_output_chars = max(200, int(self.tool_output_chars))
        self.max_reverts = max(1, int(self.max_reverts))
        self.review_max_chars = max(1000, int(self.review_max_chars))
        if self.db_path is None:
            self.db_path = self.workspace_path / ".codeagent" / "chat.db"
        else:
            self.db_path = Path(self.db_path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], workspace: Optional[Path] = None) -> "Config":
        return cls(
            api_url=data.get("api_url", DEFAULT_API_URL),
            api_key=data.get("api_key", ""),
            model=data.get("model", DEFAULT_MODEL),
            temperature=float(data.get("temperature", 0.2)),
            request_timeout=float(data.get("request_timeout", 120.0)),
            chat_history_chars=int(data.get("chat_history_chars", 32000)),
            agent_max_steps=int(data.get("agent_max_steps", 6)),
            tool_output_chars=int(data.get("tool_output_chars", 12000)),
            max_reverts=int(data.get("max_reverts", 40)),
            auto_approve=_as_bool(data.get("auto_approve", False)),
            review_max_chars=int(data.get("review_max_chars", 80000)),
            review_instructions_file=str(data.get("review_instructions_file") or ""),
            fix_instructions_file=str(data.get("fix_instructions_file") or ""),
            workspace_path=workspace or Path.cwd(),
            db_path=data.get("db_path"),
        )

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "Config":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.codeagent.json (global)
        2. workspace/.codeagent/config.json (workspace-specific)
        """
        config_data = {}
        config_data.update(load_json_config(get_global_config_path()))
        config_data.update(load_json_config(get_workspace_config_path(workspace)))
        return cls.from_dict(config_data, workspace)

    @classmethod
    def from_env(cls, workspace: Optional[Path] = None, env_path: Optional[Path] = None) -> "Config":
        """Load JSON configuration, then apply CODEAGENT_* environment overrides."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        ws = workspace or Path(os.getenv("CODEAGENT_WORKSPACE", str(Path.cwd())))
        config_data: Dict[str, Any] = {}
        config_data.update(load_json_config(get_global_config_path()))
        config_data.update(load_json_config(get_workspace_config_path(ws)))

        for key in (
            "api_url", "api_key", "model", "temperature", "request_timeout",
            "chat_history_chars", "agent_max_steps", "tool_output_chars",
            "max_reverts", "auto_approve", "db_path", "review_max_chars",
            "review_instructions_file", "fix_instructions_file",
        ):
            value = os.getenv(f"CODEAGENT_{key.upper()}")
            if value is not None and value != "":
                config_data[key] = value

        return cls.from_dict(config_data, ws)

    def validate(self) -> bool:
        """Validate the configuration."""
        if not self.api_url:
            raise ValueError("API URL is required. Set api_url in ~/.codeagent.json or CODEAGENT_API_URL.")
        if not self.model:
            raise ValueError("Model is required. Set model in ~/.codeagent.json or CODEAGENT_MODEL.")
        return True
