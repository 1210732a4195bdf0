"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_loop.domain.value_objects import DEFAULT_SYSTEM_PROMPT, AgentConfiguration


class ModelSettings(BaseSettings):
    """Model backend and sampling configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_LOOP_MODEL_",
        protected_namespaces=(),
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    model_id: str = Field(
        default="mlx-community/Qwen3-4B-4bit-DWQ-053125",
        description="HuggingFace model ID or local path",
    )

    provider: Literal["mlx", "mlx-server"] = Field(
        default="mlx",
        description="Model backend: in-process MLX or an OpenAI-compatible mlx_lm.server",
    )

    base_url: str = Field(
        default="http://localhost:8080/v1",
        description="API root of the mlx-server provider",
    )

    api_key: SecretStr = Field(
        default=SecretStr("mlx-server"),
        description="Bearer token for the mlx-server provider",
    )

    request_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="HTTP timeout in seconds for the mlx-server provider",
    )

    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Token limit per response (None = backend default)",
    )

    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature (0.0 = greedy)",
    )

    top_p: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Nucleus sampling probability mass",
    )

    repetition_penalty: float | None = Field(
        default=1.15,
        gt=0.0,
        description="Penalty applied to recently generated tokens (None = off)",
    )

    repetition_context_size: int = Field(
        default=20,
        ge=1,
        description="Number of recent tokens the repetition penalty looks at",
    )

    kv_bits: int | None = Field(
        default=8,
        description="KV cache quantization (4 or 8 bits, None = FP16)",
    )

    @field_validator("kv_bits")
    @classmethod
    def validate_kv_bits(cls, v: int | None) -> int | None:
        """Validate kv_bits is 4, 8, or None."""
        if v is not None and v not in (4, 8):
            raise ValueError("kv_bits must be 4, 8, or None (FP16)")
        return v


class AgentSettings(BaseSettings):
    """Turn loop configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_LOOP_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        description="System message placed at the start of every conversation",
    )

    max_turns: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum model turns per user message",
    )

    cache_freshness_seconds: float = Field(
        default=1800.0,
        gt=0.0,
        description="Idle time after which the prompt cache is discarded",
    )


class LoggingSettings(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_LOOP_LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: str = Field(
        default="WARNING",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    json_output: bool = Field(
        default=False,
        description="Render log events as JSON instead of console output",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}, got {v}")
        return v_upper


class MCPServerSettings(BaseModel):
    """Connection settings for one MCP tool server.

    stdio servers are launched as a subprocess; sse and http servers are
    reached at a URL.

    Example:
        >>> MCPServerSettings.stdio("npx", ["-y", "@modelcontextprotocol/server-git"], name="git")
        >>> MCPServerSettings.http("https://hf.co/mcp", name="huggingface", streaming=False)
    """

    type: Literal["stdio", "sse", "http"]
    name: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] | None = None
    streaming: bool = True

    @model_validator(mode="after")
    def validate_endpoint(self) -> "MCPServerSettings":
        """stdio servers need a command, network servers need a URL."""
        if self.type == "stdio" and not self.command:
            raise ValueError("stdio server requires a command")
        if self.type != "stdio" and not self.url:
            raise ValueError(f"{self.type.upper()} server requires a url")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.command or self.url or self.type

    @classmethod
    def stdio(
        cls,
        command: str,
        args: list[str] | None = None,
        name: str | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> "MCPServerSettings":
        return cls(type="stdio", name=name, command=command, args=args or [], env=env, cwd=cwd)

    @classmethod
    def sse(
        cls,
        url: str,
        name: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> "MCPServerSettings":
        return cls(type="sse", name=name, url=url, headers=headers)

    @classmethod
    def http(
        cls,
        url: str,
        name: str | None = None,
        headers: dict[str, str] | None = None,
        streaming: bool = True,
    ) -> "MCPServerSettings":
        return cls(type="http", name=name, url=url, headers=headers, streaming=streaming)

    @classmethod
    def filesystem(cls, path: str | None = None) -> "MCPServerSettings":
        """Reference file system server rooted at ``path`` (home by default)."""
        return cls.stdio(
            "npx",
            ["-y", "@modelcontextprotocol/server-filesystem", path or str(Path.home())],
            name="filesystem",
        )

    @classmethod
    def git(cls, repository: str | None = None) -> "MCPServerSettings":
        """Reference git server, optionally bound to one repository."""
        args = ["-y", "@modelcontextprotocol/server-git"]
        if repository:
            args.append(repository)
        return cls.stdio("npx", args, name="git")

    @classmethod
    def playwright(cls) -> "MCPServerSettings":
        """Playwright browser automation server."""
        return cls.stdio("npx", ["-y", "@playwright/mcp"], name="playwright")


class Settings(BaseSettings):
    """Root settings container.

    Aggregates all subsettings into a single object. MCP servers are read
    from ``AGENT_LOOP_MCP_SERVERS`` as a JSON list.

    Example:
        >>> settings = Settings()
        >>> settings.agent.max_turns
        10
        >>> settings.to_configuration().model_key
        'mlx-community/Qwen3-4B-4bit-DWQ-053125-0.7-0.95'
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_LOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    model: ModelSettings = Field(default_factory=ModelSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    mcp_servers: list[MCPServerSettings] = Field(default_factory=list)

    def to_configuration(self) -> AgentConfiguration:
        """Build the agent configuration from the model and agent settings."""
        return AgentConfiguration(
            model=self.model.model_id,
            provider=self.model.provider,
            system_prompt=self.agent.system_prompt,
            max_turns=self.agent.max_turns,
            temperature=self.model.temperature,
            max_tokens=self.model.max_tokens,
            top_p=self.model.top_p,
            repetition_penalty=self.model.repetition_penalty,
            repetition_context_size=self.model.repetition_context_size,
        )


# Singleton instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings singleton.

    Loads configuration from environment variables and .env file.

    Returns:
        Settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings (for testing).

    Returns:
        Fresh Settings instance.
    """
    global _settings
    _settings = Settings()
    return _settings
