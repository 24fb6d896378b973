"""
Tests para el planificador de presupuesto y la estimación de tokens.

Cubre:
- estimate_token_count (código vs prosa)
- BudgetPlanner.max_tokens_from_budget (monotonía y suelo)
- BudgetPlanner.safe_input_tokens
- BudgetPlanner.project_usage
"""

import pytest

from costgate.config.schema import BudgetConfig
from costgate.costs import BudgetPlanner, ModelPricing, estimate_token_count
from costgate.costs.budget import looks_like_code


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def pricing() -> ModelPricing:
    return ModelPricing(input_per_1k=0.00125, output_per_1k=0.01)


@pytest.fixture
def planner(pricing: ModelPricing) -> BudgetPlanner:
    return BudgetPlanner(pricing, BudgetConfig())


# ── Tests: token estimation ───────────────────────────────────────────────


class TestEstimateTokens:
    """Tests para la heurística de caracteres por token."""

    def test_empty(self) -> None:
        assert estimate_token_count("") == 0

    def test_prose_four_chars_per_token(self) -> None:
        assert estimate_token_count("a" * 400) == 100

    def test_code_three_chars_per_token(self) -> None:
        text = "def handler(): pass\n" * 15  # 300 chars
        assert looks_like_code(text)
        assert estimate_token_count(text) == 100

    def test_rounds_up(self) -> None:
        assert estimate_token_count("abcde") == 2


# ── Tests: max_tokens_from_budget ─────────────────────────────────────────


class TestMaxTokensFromBudget:
    """Tests para el techo de tokens derivado del presupuesto."""

    def test_split_thirty_seventy(self, planner: BudgetPlanner) -> None:
        # $1: 0.3 / 0.00125 * 1000 = 240000 input, 0.7 / 0.01 * 1000 = 70000 output
        assert planner.max_tokens_from_budget(1.0, 0) == pytest.approx(310000, abs=2)

    def test_split_exact(self) -> None:
        planner = BudgetPlanner(
            ModelPricing(input_per_1k=0.5, output_per_1k=1.0),
            BudgetConfig(input_share=0.5),
        )
        # $8: 4 / 0.5 * 1000 = 8000 input, 4 / 1.0 * 1000 = 4000 output
        assert planner.max_tokens_from_budget(8.0, 0) == 12000

    def test_prompt_tokens_added(self) -> None:
        planner = BudgetPlanner(
            ModelPricing(input_per_1k=0.5, output_per_1k=1.0),
            BudgetConfig(input_share=0.5),
        )
        assert planner.max_tokens_from_budget(8.0, 500) == 12500

    def test_floor_with_zero_budget(self, planner: BudgetPlanner) -> None:
        assert planner.max_tokens_from_budget(0.0, 0) == 5000

    def test_negative_budget_uses_floor(self, planner: BudgetPlanner) -> None:
        assert planner.max_tokens_from_budget(-3.0, 10) == 5000

    def test_monotonic(self, planner: BudgetPlanner) -> None:
        """Nunca decrece al aumentar el presupuesto restante."""
        budgets = [0.0, 0.0001, 0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 10.0, 100.0]
        values = [planner.max_tokens_from_budget(b, 200) for b in budgets]
        assert values == sorted(values)
        assert all(v >= 5000 for v in values)

    def test_custom_floor(self, pricing: ModelPricing) -> None:
        planner = BudgetPlanner(pricing, BudgetConfig(min_tokens=12000))
        assert planner.max_tokens_from_budget(0.0, 0) == 12000

    def test_free_model_is_not_limited_by_budget(self) -> None:
        """Un modelo con tarifas cero no divide por cero."""
        planner = BudgetPlanner(ModelPricing(input_per_1k=0.0, output_per_1k=0.0), BudgetConfig())
        # Cada parte sin precio aporta default_max_tokens (20000)
        assert planner.max_tokens_from_budget(1.0, 100) == 40100
        assert planner.max_tokens_from_budget(0.0, 0) == 40000

    def test_free_input_only(self) -> None:
        planner = BudgetPlanner(
            ModelPricing(input_per_1k=0.0, output_per_1k=1.0),
            BudgetConfig(input_share=0.5),
        )
        # $8: entrada libre (20000) + 4 / 1.0 * 1000 = 4000 salida
        assert planner.max_tokens_from_budget(8.0, 0) == 24000
        values = [planner.max_tokens_from_budget(b, 0) for b in (0.0, 1.0, 8.0, 100.0)]
        assert values == sorted(values)


# ── Tests: safe_input_tokens ──────────────────────────────────────────────


class TestSafeInputTokens:
    """Tests para el espacio disponible para recursos adjuntos."""

    def test_reserves_output_and_prompt(self, planner: BudgetPlanner) -> None:
        # reserve = max(1000, 2*300) = 1000 -> 20000 - 1000 - 300
        assert planner.safe_input_tokens(20000, 300) == 18700

    def test_large_prompt_reserves_twice_prompt(self, planner: BudgetPlanner) -> None:
        # reserve = max(1000, 2*2000) = 4000 -> 20000 - 4000 - 2000
        assert planner.safe_input_tokens(20000, 2000) == 14000

    def test_never_below_minimum(self, planner: BudgetPlanner) -> None:
        assert planner.safe_input_tokens(1000, 900) == 500


# ── Tests: project_usage ──────────────────────────────────────────────────


class TestProjectUsage:
    """Tests para la estimación previa al llamado."""

    def test_output_capped_at_seventy_percent(self, planner: BudgetPlanner) -> None:
        estimate = planner.project_usage(1000, 10000)
        assert estimate.input_tokens == 1000
        assert estimate.output_tokens == 7000
        assert estimate.estimated_cost == pytest.approx((1000 * 0.00125 + 7000 * 0.01) / 1000)

    def test_output_fills_remaining_ceiling(self, planner: BudgetPlanner) -> None:
        estimate = planner.project_usage(8000, 10000)
        assert estimate.output_tokens == 2000

    def test_input_above_ceiling(self, planner: BudgetPlanner) -> None:
        estimate = planner.project_usage(12000, 10000)
        assert estimate.output_tokens == 0
