"""Configuration management for Deckhand."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from deckhand.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
DEFAULT_SESSIONS_PATH = Path("~/.deckhand/sessions").expanduser()
LOCAL_CONFIG_FILENAME = "deckhand.yaml"


class ModelConfig(BaseModel):
    """Completion endpoint configuration."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    base_url: str = ""
    api_key: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.2
    max_tokens: int = 8192
    max_retries: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    request_timeout: float = 120.0

    def resolved_api_key(self) -> str:
        """Return the explicit key, falling back to the named env var."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_tokens: int = 128000
    compaction_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    auto_compact: bool = True


class RuleListConfig(BaseModel):
    """Allow/ask/deny pattern lists for one permission category."""

    allow: list[str] = Field(default_factory=list)
    ask: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class ModeRulesConfig(BaseModel):
    """Permission rules for one mode."""

    tools: RuleListConfig = Field(default_factory=RuleListConfig)
    bash: RuleListConfig = Field(default_factory=RuleListConfig)
    web_fetch: RuleListConfig = Field(default_factory=RuleListConfig)


class PermissionsConfig(BaseModel):
    """Per-mode permission rules. Plan mode reuses the normal rules."""

    normal: ModeRulesConfig = Field(default_factory=ModeRulesConfig)
    apply: ModeRulesConfig = Field(default_factory=ModeRulesConfig)


class BashToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 120
    max_output_chars: int = 30000


class WebFetchToolConfig(BaseModel):
    """Web fetch tool configuration."""

    max_chars: int = 100000
    timeout: float = 30.0


class ReadToolConfig(BaseModel):
    """File read tool configuration."""

    max_bytes: int = 256000


class GrepToolConfig(BaseModel):
    """Content search tool configuration."""

    max_results: int = 200


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "read_file",
        "write_file",
        "edit_file",
        "glob",
        "grep",
        "bash",
        "web_fetch",
        "ask_user_question",
        "exit_plan_mode",
    ]
    bash: BashToolConfig = Field(default_factory=BashToolConfig)
    web_fetch: WebFetchToolConfig = Field(default_factory=WebFetchToolConfig)
    read: ReadToolConfig = Field(default_factory=ReadToolConfig)
    grep: GrepToolConfig = Field(default_factory=GrepToolConfig)


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_SESSIONS_PATH)
    auto_save: bool = True


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_iterations: int = 50
    default_mode: Literal["normal", "plan", "apply"] = "normal"


class ShutdownConfig(BaseModel):
    """Shutdown behaviour."""

    flush_timeout: float = 5.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: Literal["console", "json"] = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
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
        """Load configuration from YAML file.

        An explicitly named file must exist; the default location is optional.
        """
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            if path:
                raise ConfigurationError(f"Config file not found: {config_path}")
            return cls()

        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {config_path}")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML, with env vars filling unset fields."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
