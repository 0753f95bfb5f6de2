"""Settings via pydantic-settings with ANVIL_ env prefix.

The Anthropic credential uses validation_alias to read the same unprefixed
ANTHROPIC_API_KEY the provider's own tooling uses, so a single .env file
serves both.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANVIL_", env_file=".env")

    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")

    # LLM
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    temperature: float = 0.7
    system_prompt: str = (
        "You are Anvil, a careful coding assistant. Work in phases: understand "
        "the request, propose a numbered plan, act with tools, then verify.\n"
        "To use a tool, emit a block of the form\n"
        '<tool_use>\n{"name": "<tool>", "arguments": {...}}\n</tool_use>'
    )
    stream: bool = False

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Retry policy for the model service
    max_retries: int = 3
    retry_initial_backoff: float = 1.0  # seconds
    retry_max_backoff: float = 30.0  # seconds
    retry_multiplier: float = 2.0

    # Orchestrator
    max_iterations: int = 10  # Max model calls per sub-loop
    tool_timeout: float = 120.0  # seconds, per tool call
    teaching_mode: Literal["off", "basic", "detailed", "expert"] = "off"

    # Context window
    context_max_messages: int = 100
    context_max_tokens: int = 100_000
    context_chars_per_token: int = 4

    # Sessions
    sessions_dir: str = "~/.anvil/sessions"
    max_sessions: int = 100  # Live orchestrators kept in memory
    workspace_dir: str = "."

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_retry(self) -> "Settings":
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_multiplier < 1:
            raise ValueError("retry_multiplier must be >= 1")
        if self.retry_initial_backoff > self.retry_max_backoff:
            raise ValueError(
                f"retry_initial_backoff ({self.retry_initial_backoff}) must be <= "
                f"retry_max_backoff ({self.retry_max_backoff})"
            )
        return self
