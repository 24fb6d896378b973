"""
Pydantic models for costgate configuration.

Defines all configuration schemas using Pydantic v2 for validation,
defaults, and serialization. Configuration is read once at startup;
nothing re-reads it mid-process.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ReasoningEffort = Literal["minimal", "low", "medium", "high"]

DEFAULT_FALLBACK_MODELS = [
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4-turbo-preview",
    "gpt-4-turbo",
    "gpt-4",
    "gpt-3.5-turbo",
]


class LLMConfig(BaseModel):
    """Upstream model provider configuration.

    The primary model is called through the Responses API and does not
    accept temperature or output-length parameters. Fallback models are
    called through chat completions with the full legacy parameter set.
    """

    model: str = Field(default="gpt-5", description="Primary model identifier")
    fallback_models: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FALLBACK_MODELS),
        description="Ordered list of alternate models tried when the primary tier fails",
    )
    api_base: str | None = None
    api_key_env: str = "OPENAI_API_KEY"
    timeout: float = Field(
        default=30.0,
        gt=0,
        description="Per-attempt timeout in seconds",
    )
    retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for transient errors (rate limit, 5xx), per model",
    )
    retry_base_delay: float = Field(
        default=0.3,
        ge=0,
        description="Base delay in seconds; attempt n waits base * 2^n plus jitter",
    )
    retry_jitter: float = Field(
        default=0.1,
        ge=0,
        description="Upper bound in seconds of the random jitter added to each wait",
    )
    default_reasoning_effort: ReasoningEffort = "high"
    default_temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature, only sent on the fallback path",
    )
    fallback_max_tokens: int = Field(
        default=4000,
        ge=1,
        description="Output ceiling on the fallback path when the caller gives none",
    )
    fallback_on_any_error: bool = Field(
        default=True,
        description=(
            "If True, any primary-tier failure triggers the fallback chain. "
            "If False, caller errors (bad request, authentication) surface immediately."
        ),
    )

    model_config = {"extra": "forbid"}


class CostsConfig(BaseModel):
    """Spend governance configuration.

    Limits given here seed the ledger on first start; once persisted, the
    limits stored alongside the usage history take precedence.
    """

    daily_limit_usd: float | None = Field(default=10.0, ge=0)
    task_limit_usd: float | None = Field(default=5.0, ge=0)
    data_dir: Path = Field(
        default=Path("./data"),
        description="Directory holding the usage ledger (usage.json)",
    )
    prices_file: Path | None = Field(
        default=None,
        description="JSON file with custom prices overriding default_prices.json",
    )
    confirm_threshold: float = Field(
        default=0.10,
        ge=0.0,
        le=1.0,
        description="Remaining daily fraction at or below which spending needs confirmation",
    )
    warn_threshold: float = Field(
        default=0.80,
        ge=0.0,
        le=1.0,
        description="Usage fraction at which a warning is attached to the result",
    )
    runaway_multiplier: float = Field(
        default=10.0,
        ge=1.0,
        description="Task spend above this multiple of the per-task limit is hard-blocked",
    )
    conversation_runaway_multiplier: float = Field(
        default=10.0,
        ge=1.0,
        description="A single turn above this multiple of the remaining conversation budget is hard-blocked",
    )

    model_config = {"extra": "forbid"}


class BudgetConfig(BaseModel):
    """Budget planner configuration (currency budget -> token ceilings)."""

    input_share: float = Field(
        default=0.3,
        gt=0.0,
        lt=1.0,
        description="Fraction of the remaining budget assigned to input tokens",
    )
    min_tokens: int = Field(
        default=5000,
        ge=1,
        description="Floor of the per-call token ceiling, even with no budget left",
    )
    min_output_reserve: int = Field(default=1000, ge=0)
    min_safe_input: int = Field(default=500, ge=1)
    default_max_tokens: int = Field(
        default=20000,
        ge=1,
        description="Requested ceiling when the caller does not give max_tokens",
    )

    model_config = {"extra": "forbid"}


class ResourcesConfig(BaseModel):
    """Attached-resource normalization limits."""

    max_resources: int = Field(default=10, ge=1)
    max_tokens_per_resource: int = Field(default=1500, ge=1)
    max_total_tokens: int = Field(
        default=8000,
        ge=1,
        description="Per-call ceiling; the effective cap is min(this, safe input tokens)",
    )
    base64_min_length: int = Field(default=512, ge=16)

    model_config = {"extra": "forbid"}


class ConversationsConfig(BaseModel):
    """Conversation store limits."""

    max_conversations: int = Field(default=50, ge=1)
    max_messages: int = Field(default=100, ge=2)
    context_window: int = Field(
        default=10,
        ge=1,
        description="Most recent messages sent per call when no override exists",
    )
    summary_keep_recent: int = Field(default=4, ge=0)

    model_config = {"extra": "forbid"}


class LoggingConfig(BaseModel):
    """Logging system configuration."""

    level: Literal["debug", "info", "warn", "error"] = "info"
    file: Path | None = None
    verbose: int = 0

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.lower()
            if v == "warning":
                return "warn"
        return v

    model_config = {"extra": "forbid"}


class AppConfig(BaseModel):
    """Complete application configuration.

    This is the root of the configuration tree. It combines all sections
    and is the entry point for validation.
    """

    llm: LLMConfig = Field(default_factory=LLMConfig)
    costs: CostsConfig = Field(default_factory=CostsConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)
    conversations: ConversationsConfig = Field(default_factory=ConversationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"extra": "forbid"}
