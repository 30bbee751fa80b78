"""Configuration management for converse-agent."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from converse_agent.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.converse-agent/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.converse-agent/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ThinkingConfig(BaseModel):
    """Extended thinking for models that support it."""

    type: Literal["enabled", "disabled"] = "disabled"
    budget_tokens: int = 4096
    interleaved: bool = False

    def request_fields(self) -> dict[str, str | int] | None:
        """The ``thinking`` request field, or None when disabled."""
        if self.type != "enabled":
            return None
        return {"type": self.type, "budget_tokens": self.budget_tokens}


class ModelConfig(BaseModel):
    """Model and inference configuration."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str = "anthropic.claude-3-5-sonnet-20240620-v1:0"
    max_tokens: int = 4096
    temperature: float = 0.5
    top_p: float | None = None
    system_prompt: str = ""
    thinking: ThinkingConfig = Field(default_factory=ThinkingConfig)

    def inference_config(self) -> dict[str, float | int]:
        """Build the inference config payload sent with each request."""
        payload: dict[str, float | int] = {
            "maxTokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if self.top_p is not None:
            payload["topP"] = self.top_p
        return payload


class ContextConfig(BaseModel):
    """Context window configuration."""

    context_length: int = 200000
    prompt_cache: bool = True


class OrchestratorConfig(BaseModel):
    """Conversation loop limits."""

    max_tool_depth: int = 25
    protocol_retries: int = 1


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = []
    timeout: float = 30.0


class GuardrailConfig(BaseModel):
    """Guardrail configuration."""

    enabled: bool = False
    check_input: bool = True
    input_patterns: list[str] = []
    output_patterns: list[str] = []
    remediation: str = "Content blocked by guardrail."


class TransportConfig(BaseModel):
    """Model stream transport configuration."""

    endpoint: str = "http://127.0.0.1:8787/converse-stream"
    api_key: str = ""
    timeout: float = 120.0


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_DB_PATH)
    enable_history: bool = True


class ModelPriceConfig(BaseModel):
    """Per-1000-token price entry."""

    match: str
    input: float
    output: float
    cache_read: float = 0.0
    cache_write: float = 0.0


class PricingConfig(BaseModel):
    """Cost table overrides, checked before the built-in table."""

    overrides: list[ModelPriceConfig] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for converse-agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    guardrail: GuardrailConfig = Field(default_factory=GuardrailConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CONVERSE_",
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

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables fill in keys the file leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

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


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
