"""
Configuration module for costgate.

Exports the main components for convenient imports.
"""

from .loader import ConfigError, load_config
from .schema import (
    AppConfig,
    BudgetConfig,
    ConversationsConfig,
    CostsConfig,
    LLMConfig,
    LoggingConfig,
    ReasoningEffort,
    ResourcesConfig,
)

__all__ = [
    "load_config",
    "ConfigError",
    "AppConfig",
    "LLMConfig",
    "CostsConfig",
    "BudgetConfig",
    "ResourcesConfig",
    "ConversationsConfig",
    "LoggingConfig",
    "ReasoningEffort",
]
