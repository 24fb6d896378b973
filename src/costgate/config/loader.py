"""
Configuration loader with deep merge.

Precedence order (lowest to highest):
1. Defaults (defined in the Pydantic schemas)
2. YAML file
3. Environment variables
4. CLI arguments

The merge is recursive so every key survives at every level.
"""

import os
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import ValidationError

from .schema import AppConfig


class ConfigError(Exception):
    """Raised when configuration cannot be read or does not validate."""


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _ms_to_seconds(value: str) -> float:
    return float(value) / 1000.0


# env var -> (config path, converter). Extend by adding entries.
ENV_OVERRIDES: dict[str, tuple[tuple[str, str], Callable[[str], Any]]] = {
    "DAILY_COST_LIMIT": (("costs", "daily_limit_usd"), float),
    "TASK_COST_LIMIT": (("costs", "task_limit_usd"), float),
    "DATA_DIR": (("costs", "data_dir"), str),
    "DEFAULT_TEMPERATURE": (("llm", "default_temperature"), float),
    "DEFAULT_REASONING_EFFORT": (("llm", "default_reasoning_effort"), str.lower),
    "GPT5_MODEL": (("llm", "model"), str),
    "OPENAI_RESPONSES_MODEL": (("llm", "model"), str),
    "OPENAI_FALLBACK_MODELS": (("llm", "fallback_models"), _split_csv),
    "OPENAI_RETRY_COUNT": (("llm", "retries"), int),
    "OPENAI_RETRY_BASE_DELAY_MS": (("llm", "retry_base_delay"), _ms_to_seconds),
    "OPENAI_TIMEOUT_MS": (("llm", "timeout"), _ms_to_seconds),
    "OPENAI_API_BASE": (("llm", "api_base"), str),
    "MAX_CONVERSATIONS": (("conversations", "max_conversations"), int),
    "MAX_CONVERSATION_HISTORY": (("conversations", "max_messages"), int),
    "MAX_CONVERSATION_CONTEXT": (("conversations", "context_window"), int),
    "LOG_LEVEL": (("logging", "level"), str.lower),
    "COSTGATE_LOG_FILE": (("logging", "file"), str),
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dictionary merge.

    Args:
        base: Base dictionary
        override: Dictionary whose values override the base

    Returns:
        New merged dictionary. Override wins on leaf conflicts.

    Example:
        >>> base = {"a": {"b": 1, "c": 2}, "d": 3}
        >>> override = {"a": {"b": 99}, "e": 4}
        >>> deep_merge(base, override)
        {"a": {"b": 99, "c": 2}, "d": 3, "e": 4}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(config_path: Path | None) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML file, or None to skip

    Returns:
        Dictionary with the configuration, or an empty dict if there is no file
    """
    if not config_path:
        return {}

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {config_path} must be a mapping")
    return data


def load_env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Load overrides from environment variables listed in ENV_OVERRIDES.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Nested dictionary of overrides

    Raises:
        ConfigError: If a variable is set but cannot be converted
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for env_name, ((section, key), convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = convert(raw.strip())
        except ValueError as e:
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from e
        overrides.setdefault(section, {})[key] = value

    return overrides


def apply_cli_overrides(config_dict: dict[str, Any], cli_args: dict[str, Any]) -> dict[str, Any]:
    """Apply overrides from CLI arguments.

    Args:
        config_dict: Base configuration (already merged with YAML and env)
        cli_args: Dictionary with CLI arguments

    Returns:
        Configuration with the CLI overrides applied
    """
    overrides: dict[str, Any] = {}

    if cli_args.get("model"):
        overrides.setdefault("llm", {})["model"] = cli_args["model"]

    if cli_args.get("data_dir"):
        overrides.setdefault("costs", {})["data_dir"] = cli_args["data_dir"]

    if cli_args.get("log_file"):
        overrides.setdefault("logging", {})["file"] = cli_args["log_file"]

    if cli_args.get("verbose") is not None:
        overrides.setdefault("logging", {})["verbose"] = cli_args["verbose"]

    return deep_merge(config_dict, overrides)


def load_config(
    config_path: Path | None = None,
    cli_args: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """Load and validate the complete application configuration.

    Args:
        config_path: Path to the YAML configuration file
        cli_args: Dictionary with CLI arguments
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If config_path does not exist
        ConfigError: If the merged configuration is not valid
    """
    cli_args = cli_args or {}

    merged = deep_merge(load_yaml_config(config_path), load_env_overrides(environ))
    merged = apply_cli_overrides(merged, cli_args)

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
