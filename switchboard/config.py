"""Configuration management for Switchboard."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.switchboard/config.yaml").expanduser()
DEFAULT_CONVERSATIONS_PATH = Path("~/.switchboard/conversations").expanduser()
LOCAL_CONFIG_FILENAME = "switchboard.yaml"

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class ModelConfig(BaseModel):
    """Model configuration."""

    default: str = "gemini-2.5-flash"
    temperature: float = 0.7
    max_tokens: int = 8192
    request_timeout: float = 120.0
    ollama_base_url: str = "http://localhost:11434"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    api_keys: list[str] = Field(default_factory=list)


class ContextConfig(BaseModel):
    """Context window configuration (characters)."""

    budget: int = 8000


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    provider: Literal["duckduckgo", "brave"] = "duckduckgo"
    api_key: str = ""
    timeout: float = 10.0


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: bool = True
    disabled: list[str] = Field(default_factory=list)
    allowed_dirs: list[str] = Field(default_factory=lambda: ["."])
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allow_command_execution: bool = False
    confirm_commands: bool = False
    command_timeout: float = 30.0
    call_timeout: float = 60.0
    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)


class ToolServerConfig(BaseModel):
    """A remote tool server endpoint."""

    name: str
    address: str


class LoopConfig(BaseModel):
    """Tool loop configuration."""

    max_iterations: int = 10
    transient_retries: int = 2
    transient_backoff: float = 0.5


class ConversationsConfig(BaseModel):
    """Conversation persistence configuration."""

    path: str = str(DEFAULT_CONVERSATIONS_PATH)
    save_markdown: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Switchboard."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    tool_servers: list[ToolServerConfig] = Field(default_factory=list)
    tool_server_timeout: float = 30.0
    tool_server_connect_timeout: float = 5.0
    loop: LoopConfig = Field(default_factory=LoopConfig)
    conversations: ConversationsConfig = Field(default_factory=ConversationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SWITCHBOARD_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats YAML (YAML values arrive as init kwargs)
        return env_settings, dotenv_settings, init_settings, file_secret_settings

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
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file (credentials are never written)."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)
        data.get("model", {}).pop("api_keys", None)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config
