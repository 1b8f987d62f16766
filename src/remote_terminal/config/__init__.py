"""Configuration — Pydantic models for remote-terminal settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


class ServerConfig(BaseModel):
    """Web terminal listener."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=7860, ge=1, le=65535)


class TerminalConfig(BaseModel):
    """Pseudo-terminal sessions spawned for WebSocket clients."""

    shell: str = Field(default_factory=_default_shell)
    cols: int = Field(default=80, gt=0)
    rows: int = Field(default=24, gt=0)
    term: str = Field(default="xterm-256color", description="TERM for spawned shells")


class LLMConfig(BaseModel):
    """Model backend configuration.

    Model names use litellm's provider-prefix format:
        "openai/gpt-4.1-nano"
        "anthropic/claude-sonnet-4-5-20250929"

    API keys are read from env vars automatically by litellm
    (OPENAI_API_KEY, ANTHROPIC_API_KEY, GEMINI_API_KEY).
    """

    model: str = Field(default="openai/gpt-4.1-nano")
    temperature: float | None = Field(default=None)
    max_tokens: int | None = Field(default=4096)


class AgentConfig(BaseModel):
    """Budgets for the shell-running agent."""

    max_turns: int = Field(default=10, gt=0, description="Model requests per message")
    max_output_chars: int = Field(
        default=8000, gt=0, description="Characters of command output fed back"
    )
    command_timeout: float = Field(default=120.0, gt=0)
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)


class PresetCommand(BaseModel):
    """A named command runnable with ``remote-terminal run NAME``."""

    cmd: str
    description: str = ""
    long: bool = Field(
        default=False, description="Run in the background instead of to completion"
    )


class CommandsConfig(BaseModel):
    """Foreground and background execution limits for preset commands."""

    timeout: float = Field(default=60.0, gt=0)
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)
    initial_output_delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds of background output collected before the first report",
    )
    presets: dict[str, PresetCommand] = Field(default_factory=dict)


class RemoteTerminalConfig(BaseModel):
    """Top-level remote-terminal configuration."""

    workspace: str = Field(default_factory=os.getcwd)
    server: ServerConfig = Field(default_factory=ServerConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)

    @classmethod
    def load(
        cls, config_path: str | None = None, workspace: str | None = None
    ) -> RemoteTerminalConfig:
        """Load config from file, env vars, or defaults.

        Priority: explicit arguments > env vars > config file > defaults.

        Env vars:
            WORKSPACE                   - Workspace directory
            SHELL                       - Shell spawned for terminal sessions
            OPENAI_API_KEY              - OpenAI API key (read by litellm automatically)
            REMOTE_TERMINAL_MODEL       - Model in litellm format
            OPENAI_MODEL                - Bare OpenAI model name (prefixed with "openai/")
            REMOTE_TERMINAL_HOST        - Listen address
            REMOTE_TERMINAL_PORT        - Listen port
            REMOTE_TERMINAL_MAX_TURNS   - Agent turn budget
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_workspace = workspace or os.environ.get("WORKSPACE")
        if env_workspace:
            config_data["workspace"] = env_workspace

        server = config_data.get("server", {})
        env_host = os.environ.get("REMOTE_TERMINAL_HOST")
        if env_host:
            server["host"] = env_host
        env_port = os.environ.get("REMOTE_TERMINAL_PORT")
        if env_port:
            server["port"] = int(env_port)
        if server:
            config_data["server"] = server

        llm = config_data.get("llm", {})
        env_openai_model = os.environ.get("OPENAI_MODEL")
        if env_openai_model:
            llm["model"] = (
                env_openai_model
                if "/" in env_openai_model
                else f"openai/{env_openai_model}"
            )
        env_model = os.environ.get("REMOTE_TERMINAL_MODEL")
        if env_model:
            llm["model"] = env_model
        if llm:
            config_data["llm"] = llm

        env_max_turns = os.environ.get("REMOTE_TERMINAL_MAX_TURNS")
        if env_max_turns:
            config_data.setdefault("agent", {})["max_turns"] = int(env_max_turns)

        config = cls.model_validate(config_data)
        config.workspace = resolve_workspace(config.workspace)
        return config


def resolve_workspace(path: str | None) -> str:
    """Expand ``~`` and make the workspace absolute."""
    if not path:
        return os.getcwd()
    return str(Path(path).expanduser().resolve())
