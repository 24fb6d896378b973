"""
Model price table.

Static per-model unit costs (USD per 1K tokens) loaded from the embedded
default_prices.json, optionally overridden by a custom file.

Resolution order:
1. Exact model name
2. Longest registered key the model name starts with
   (e.g., "gpt-4o-2024-08-06" resolves to "gpt-4o")
3. The designated default entry ("_default" in the JSON file)
"""

import json
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ModelPricing:
    """Prices per 1K tokens for a given model."""

    input_per_1k: float
    output_per_1k: float
    cached_input_per_1k: float | None = None
    reasoning_per_1k: float | None = None

    @property
    def reasoning_rate(self) -> float:
        """Reasoning tokens are billed at the output rate unless priced separately."""
        if self.reasoning_per_1k is None:
            return self.output_per_1k
        return self.reasoning_per_1k

    def cost(
        self,
        input_tokens: int,
        output_tokens: int,
        reasoning_tokens: int = 0,
        cached_tokens: int = 0,
    ) -> float:
        """Cost in USD of a call with the given token split.

        Cached tokens are part of input_tokens and are charged at the cached
        rate when one is defined. Reasoning tokens are priced on top of output.
        """
        cached = min(max(0, cached_tokens), max(0, input_tokens))
        non_cached = max(0, input_tokens - cached)
        cached_rate = (
            self.cached_input_per_1k
            if self.cached_input_per_1k is not None
            else self.input_per_1k
        )

        total = (
            non_cached * self.input_per_1k
            + cached * cached_rate
            + max(0, output_tokens) * self.output_per_1k
            + max(0, reasoning_tokens) * self.reasoning_rate
        ) / 1000
        return round(total, 6)


class PriceTable:
    """Loads and resolves per-model prices.

    Lookup never raises: unknown models resolve to the default entry.
    """

    _DEFAULT_PRICES_PATH = Path(__file__).parent / "default_prices.json"

    def __init__(self, custom_path: Path | None = None) -> None:
        self._prices: dict[str, ModelPricing] = {}
        self._default_key = "gpt-5"
        self._log = logger.bind(component="price_table")

        self._load_file(self._DEFAULT_PRICES_PATH)

        if custom_path:
            if custom_path.exists():
                self._load_file(custom_path)
                self._log.info("price_table.custom_loaded", path=str(custom_path))
            else:
                self._log.warning("price_table.custom_not_found", path=str(custom_path))

    @property
    def default_model(self) -> str:
        return self._default_key

    def models(self) -> list[str]:
        return sorted(self._prices)

    def get_prices(self, model: str) -> ModelPricing:
        """Resolve the pricing entry for a model.

        Args:
            model: Model identifier (e.g., "gpt-5", "openai/gpt-4o-mini")

        Returns:
            ModelPricing for the model, or the default entry
        """
        if model in self._prices:
            return self._prices[model]

        # Provider-qualified names ("openai/gpt-4o") resolve on the bare name
        bare = model.split("/")[-1]
        if bare in self._prices:
            return self._prices[bare]

        matches = [key for key in self._prices if bare.startswith(key)]
        if matches:
            key = max(matches, key=len)
            self._log.debug("price_table.prefix_match", model=model, matched_key=key)
            return self._prices[key]

        self._log.debug("price_table.default", model=model, default=self._default_key)
        return self._prices[self._default_key]

    def _load_file(self, path: Path) -> None:
        """Load a JSON price file and add its entries to the table."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            for key, value in data.items():
                if key == "_default":
                    self._default_key = str(value)
                    continue
                if key.startswith("_"):
                    continue  # _comment, _sources, etc.
                pricing = ModelPricing(
                    input_per_1k=float(value["input_per_1k"]),
                    output_per_1k=float(value["output_per_1k"]),
                    cached_input_per_1k=_optional_float(value.get("cached_input_per_1k")),
                    reasoning_per_1k=_optional_float(value.get("reasoning_per_1k")),
                )
                rates = (
                    pricing.input_per_1k,
                    pricing.output_per_1k,
                    pricing.cached_input_per_1k or 0.0,
                    pricing.reasoning_per_1k or 0.0,
                )
                if min(rates) < 0:
                    self._log.warning("price_table.negative_rate_skipped", path=str(path), model=key)
                    continue
                self._prices[key] = pricing
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            self._log.error("price_table.load_failed", path=str(path), error=str(e))

        if self._default_key not in self._prices and self._prices:
            self._log.warning("price_table.default_missing", default=self._default_key)
            self._default_key = next(iter(self._prices))


def _optional_float(value: object) -> float | None:
    return float(value) if value is not None else None
