"""Settings via pydantic-settings with TANDEM_ env prefix.

Provider credentials use validation_alias so the conventional unprefixed
ANTHROPIC_API_KEY / OPENAI_API_KEY variables work without duplication.
Additional keys for rotation go in TANDEM_EXTRA_API_KEYS (comma-separated).
"""

from collections.abc import Iterable
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TANDEM_", env_file=".env")

    agent_id: str = "main"
    log_level: str = "info"

    # Provider
    provider: Literal["anthropic", "openai"] = "anthropic"
    api_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    extra_api_keys: str = ""
    small_model_api_keys: str = ""

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    small_model: str = "claude-haiku-4-5-20251001"
    compaction_model: str = ""  # empty -> model
    max_tokens: int = 8192
    stream: bool = False

    # HTTP
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Retry
    max_retries: int = 10
    retry_base_delay: float = 0.5  # seconds, doubled per attempt
    retry_max_delay: float = 32.0
    retry_after_cap: float = 60.0
    retry_jitter: float = Field(0.0, ge=0.0, le=1.0)  # fraction of the delay added at random

    # Tool loop
    max_tool_rounds: int = 100
    max_concurrent_tools: int = 10
    workspace_dir: str = "/tmp/tandem-workspace"
    load_project_context: bool = True  # README.md, CLAUDE.md, Code_Context.md
    bash_timeout: int = 120  # seconds, default per command
    bash_max_timeout: int = 600

    # Compaction
    compaction_enabled: bool = True
    compaction_threshold_ratio: float = 0.92
    context_limit: int = 200_000
    recovery_max_files: int = 5
    recovery_max_tokens_per_file: int = 10_000
    recovery_max_total_tokens: int = 50_000

    # Reminders
    todo_reminder_enabled: bool = True
    file_reminder_enabled: bool = True
    security_reminder_enabled: bool = True
    performance_reminder_enabled: bool = True
    max_reminders_per_session: int = 10
    long_session_seconds: int = 1800

    # Cancellation
    cancel_grace_seconds: float = 0.5

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        if not 0.0 < self.compaction_threshold_ratio <= 1.0:
            raise ValueError(
                f"compaction_threshold_ratio must be in (0, 1], got {self.compaction_threshold_ratio}"
            )
        if self.recovery_max_tokens_per_file > self.recovery_max_total_tokens:
            raise ValueError(
                f"recovery_max_tokens_per_file ({self.recovery_max_tokens_per_file}) must be <= "
                f"recovery_max_total_tokens ({self.recovery_max_total_tokens})"
            )
        return self

    @property
    def primary_api_key(self) -> str:
        return self.openai_api_key if self.provider == "openai" else self.anthropic_api_key

    @property
    def base_url(self) -> str:
        return self.openai_base_url if self.provider == "openai" else self.api_base_url

    @property
    def api_keys(self) -> list[str]:
        """Primary key first, then the rotation pool, de-duplicated in order."""
        keys = [self.primary_api_key, *self.extra_api_keys.split(",")]
        return _dedupe(k.strip() for k in keys if k.strip())

    @property
    def small_api_keys(self) -> list[str]:
        keys = [k.strip() for k in self.small_model_api_keys.split(",") if k.strip()]
        return _dedupe(keys) or self.api_keys


def _dedupe(keys: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for key in keys:
        if key not in seen:
            seen.append(key)
    return seen
