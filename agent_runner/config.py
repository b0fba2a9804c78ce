"""Configuration management for the agent runner."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_runner.exceptions import ConfigurationError
from agent_runner.tool_policy import (
    DEFAULT_IDEMPOTENT_PREFIXES,
    DEFAULT_IDEMPOTENT_TOOL_NAMES,
    DEFAULT_MUTATING_PREFIXES,
    DEFAULT_MUTATING_TOOL_NAMES,
    ToolCompactionOptions,
)


# Paths
DEFAULT_CONFIG_PATH = Path("~/.agent-runner/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ContextPruningConfig(BaseModel):
    """Soft-trim limits for old assistant messages."""

    soft_trim_max_chars: int = 4_000
    soft_trim_head_chars: int = 1_500
    soft_trim_tail_chars: int = 1_500
    keep_last_assistant: int = 3


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_context_tokens: int = 128_000
    compaction_trigger_tokens: int = 120_000
    recent_context_tokens: int = 8_000
    summary_max_output_tokens: int = 2_048
    max_history_turns: int = 40
    multi_part_threshold_tokens: int = 40_000
    max_summary_parts: int = 3
    pruning: ContextPruningConfig = Field(default_factory=ContextPruningConfig)


class MemoryConfig(BaseModel):
    """Session recall limits."""

    max_results: int = 6
    max_tokens: int = 2_000


class ToolsConfig(BaseModel):
    """Tool loop configuration."""

    max_tool_steps: int = 200
    max_attempts: int = 3
    retry_backoff_ms: int = 250
    max_nudges: int = 1
    idempotent_names: list[str] = Field(default_factory=lambda: sorted(DEFAULT_IDEMPOTENT_TOOL_NAMES))
    idempotent_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_IDEMPOTENT_PREFIXES))
    mutating_names: list[str] = Field(default_factory=lambda: sorted(DEFAULT_MUTATING_TOOL_NAMES))
    mutating_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_MUTATING_PREFIXES))
    compaction: ToolCompactionOptions = Field(default_factory=ToolCompactionOptions)


class IpcConfig(BaseModel):
    """Host IPC directory and polling configuration."""

    root: str = "/workspace/ipc"
    request_timeout_ms: int = 30_000
    request_poll_ms: int = 150


class McpServerConfig(BaseModel):
    """One external MCP server launched over stdio."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class McpConfig(BaseModel):
    """MCP client configuration."""

    enabled: bool = True
    servers: list[McpServerConfig] = Field(default_factory=list)
    connection_timeout_ms: int = 10_000
    protocol_version: str = "2024-11-05"
    client_name: str = "agent-runner"
    client_version: str = "0.1.0"


class SessionConfig(BaseModel):
    """Session storage configuration."""

    root: str = "/workspace/sessions"
    archive_dir: str = ""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for the agent runner."""

    context: ContextConfig = Field(default_factory=ContextConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    ipc: IpcConfig = Field(default_factory=IpcConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_RUNNER_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; env vars fill whatever YAML leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)


class ConfigSource:
    """Owns one loaded Config and reloads it on request.

    Components receive ``source.config`` at construction; nothing reads
    configuration from module globals.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path).expanduser() if path else Config.resolve_default_config_path()
        self._config = Config.load(self.path)

    @property
    def config(self) -> Config:
        return self._config

    def reload(self) -> Config:
        """Re-read the YAML file and replace the held config."""
        self._config = Config.load(self.path)
        return self._config
