"""Configuration management for turnloop."""

from enum import Enum
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.turnloop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "turnloop.yaml"

DEFAULT_MODEL = "qwen3:32b"
DEFAULT_FALLBACK_MODEL = "qwen3:8b"
DEFAULT_MCP_TIMEOUT_SECONDS = 30.0


class ApprovalMode(str, Enum):
    """How much the user must approve before tools run."""

    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = DEFAULT_MODEL
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    temperature: float = 0.0
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    request_timeout: float = 120.0


class SessionConfig(BaseModel):
    """Conversation session configuration."""

    target_dir: str = "."
    max_turns: int = 100
    full_context: bool = False
    approval_mode: ApprovalMode = ApprovalMode.DEFAULT


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: float | None = None
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]
    allowed_commands: list[str] = []


class WebFetchToolConfig(BaseModel):
    """Web fetch tool configuration."""

    max_chars: int = 100000
    timeout: float = 30.0


class ReadFileToolConfig(BaseModel):
    """Read file tool configuration."""

    max_lines: int = 2000
    max_bytes: int = 20 * 1024 * 1024


class ToolsConfig(BaseModel):
    """Tools configuration."""

    core: list[str] = [
        "read_file",
        "write_file",
        "glob",
        "read_many_files",
        "run_shell_command",
        "web_fetch",
    ]
    exclude: list[str] = []
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    web_fetch: WebFetchToolConfig = Field(default_factory=WebFetchToolConfig)
    read_file: ReadFileToolConfig = Field(default_factory=ReadFileToolConfig)


class MCPServerConfig(BaseModel):
    """One remote tool provider: a local command or a URL."""

    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    url: str | None = None
    transport: Literal["sse", "websocket"] | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = DEFAULT_MCP_TIMEOUT_SECONDS
    trust: bool = False

    @model_validator(mode="after")
    def _infer_transport(self) -> "MCPServerConfig":
        """Pick websocket for ws:// URLs unless a transport was given."""
        if self.url and self.transport is None:
            scheme = self.url.split(":", 1)[0].lower()
            self.transport = "websocket" if scheme in {"ws", "wss"} else "sse"
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for turnloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    mcp_servers: dict[str, MCPServerConfig] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TURNLOOP_",
        env_file=".env",
        env_nested_delimiter="__",
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration. Values in the YAML file win over TURNLOOP_* environment variables."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_target_dir(self) -> Path:
        """Absolute workspace root that file and shell tools are confined to."""
        return Path(self.session.target_dir).expanduser().resolve()

    def get_approval_mode(self) -> ApprovalMode:
        return self.session.approval_mode

    def set_approval_mode(self, mode: ApprovalMode) -> None:
        self.session.approval_mode = mode
