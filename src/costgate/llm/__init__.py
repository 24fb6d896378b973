"""
LLM module - Model gateway over LiteLLM with retries and fallback models.
"""

from .gateway import (
    ModelCallRequest,
    ModelCallResult,
    ModelGateway,
    NoCompatibleModelError,
    normalize_usage,
)

__all__ = [
    "ModelCallRequest",
    "ModelCallResult",
    "ModelGateway",
    "NoCompatibleModelError",
    "normalize_usage",
]
