"""Settings via pydantic-settings with OPENCRABS_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) that other Anthropic
tooling uses, so a single .env file works for both.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OPENCRABS_", env_file=".env")

    # Storage
    db_url: str = "sqlite+aiosqlite:///./opencrabs.db"
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    system_prompt: str = ""

    # Tool loop
    max_tool_iterations: int = 0  # 0 = unlimited (bounded by tool_iteration_ceiling)
    tool_iteration_ceiling: int = 200
    auto_approve_tools: bool = False
    streaming_enabled: bool = True

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    workspace_dir: str = "/tmp/opencrabs-workspace"

    # Compaction
    compaction_enabled: bool = True
    compaction_threshold: float = 0.8  # fraction of the model context window
    compaction_keep_recent: int = 8  # messages kept verbatim after compaction

    @model_validator(mode="after")
    def _validate_loop(self) -> "Settings":
        if self.max_tool_iterations < 0:
            raise ValueError("max_tool_iterations must be >= 0 (0 = unlimited)")
        if self.tool_iteration_ceiling < 1:
            raise ValueError("tool_iteration_ceiling must be >= 1")
        if not 0.0 < self.compaction_threshold <= 1.0:
            raise ValueError(
                f"compaction_threshold ({self.compaction_threshold}) must be in (0, 1]"
            )
        return self

    @property
    def effective_iteration_cap(self) -> int:
        """Tool iteration cap actually enforced by the loop."""
        if self.max_tool_iterations > 0:
            return self.max_tool_iterations
        return self.tool_iteration_ceiling
