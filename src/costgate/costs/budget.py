"""
Budget planner -- converts currency budgets into token ceilings.

Pure arithmetic, no I/O. Token estimation is a character-ratio heuristic
used for pre-flight sizing only; billing always uses the provider's
reported usage.
"""

import math

from ..config.schema import BudgetConfig
from .prices import ModelPricing
from .usage import TokenUsage

# Substrings that mark text as source code (denser in tokens per character)
_CODE_MARKERS = ("function", "class", "import", "def ", "const ", "return ")

CODE_CHARS_PER_TOKEN = 3
PROSE_CHARS_PER_TOKEN = 4


def looks_like_code(text: str) -> bool:
    return any(marker in text for marker in _CODE_MARKERS)


def chars_per_token(text: str) -> int:
    return CODE_CHARS_PER_TOKEN if looks_like_code(text) else PROSE_CHARS_PER_TOKEN


def estimate_token_count(text: str) -> int:
    """Estimate tokens: ~3 chars/token for code, ~4 chars/token for prose."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token(text))


class BudgetPlanner:
    """Token ceilings from a remaining currency budget.

    Output gets the larger share of the budget because output (and
    reasoning) tokens cost several times more than input tokens.
    """

    def __init__(self, pricing: ModelPricing, config: BudgetConfig | None = None) -> None:
        self.pricing = pricing
        self.config = config or BudgetConfig()

    def max_tokens_from_budget(self, remaining_budget: float, prompt_tokens: int) -> int:
        """Maximum tokens for one call given the remaining budget.

        Non-decreasing in remaining_budget and never below config.min_tokens.

        Args:
            remaining_budget: Remaining currency budget (negative treated as zero)
            prompt_tokens: Estimated prompt size in tokens

        Returns:
            Token ceiling for the call
        """
        budget = max(0.0, remaining_budget)
        input_budget = budget * self.config.input_share
        output_budget = budget * (1.0 - self.config.input_share)

        max_input = self._affordable_tokens(input_budget, self.pricing.input_per_1k)
        max_output = self._affordable_tokens(output_budget, self.pricing.output_per_1k)

        total = max_input + max_output + max(0, prompt_tokens)
        return max(self.config.min_tokens, total)

    def _affordable_tokens(self, budget: float, rate_per_1k: float) -> int:
        # Free (zero-priced) tokens are not limited by money
        if rate_per_1k <= 0:
            return self.config.default_max_tokens
        return math.floor(budget / rate_per_1k * 1000)

    def safe_input_tokens(self, max_tokens: int, prompt_tokens: int) -> int:
        """Room left for attached content after reserving output and the prompt.

        The output reserve is the larger of config.min_output_reserve and
        twice the prompt. The result never drops below config.min_safe_input.
        """
        output_reserve = max(self.config.min_output_reserve, prompt_tokens * 2)
        safe_input = max_tokens - output_reserve - prompt_tokens
        return max(self.config.min_safe_input, safe_input)

    def project_usage(self, input_tokens: int, max_tokens: int) -> TokenUsage:
        """What-if usage for a call that sends input_tokens under max_tokens.

        Assumes output fills the rest of the ceiling, capped at 70% of it.
        """
        output_share = 1.0 - self.config.input_share
        output_tokens = max(0, min(max_tokens - input_tokens, int(max_tokens * output_share)))
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=self.pricing.cost(input_tokens, output_tokens),
        )
