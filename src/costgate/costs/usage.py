"""
TokenUsage -- normalized usage/cost record of one model call.

Produced by the model gateway after every call, or projected by the
pipeline before a call as a what-if estimate.
"""

from typing import Any

from pydantic import BaseModel, Field, computed_field


class TokenUsage(BaseModel):
    """Token counts and estimated cost of a model call.

    total_tokens is always input + output. Reasoning tokens are priced on
    top of output but not added to the total.
    """

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    reasoning_tokens: int | None = Field(default=None, ge=0)
    cached_tokens: int = Field(default=0, ge=0)
    estimated_cost: float = Field(default=0.0, ge=0.0)

    model_config = {"frozen": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def breakdown(self) -> dict[str, Any]:
        """Caller-facing usage breakdown."""
        return {
            "tokens": self.total_tokens,
            "cost": round(self.estimated_cost, 6),
            "breakdown": {
                "input": self.input_tokens,
                "output": self.output_tokens,
                "reasoning": self.reasoning_tokens,
            },
        }
