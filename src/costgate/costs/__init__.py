"""
Cost module -- pricing, spend ledger, budget planning and governance.

Exports the main components for cost tracking and budgeting.
"""

from .budget import BudgetPlanner, estimate_token_count
from .governor import ConversationBudget, CostGovernor, SpendDecision
from .ledger import (
    CostBreakdown,
    CostLimits,
    CostReport,
    ReportPeriod,
    UsageLedger,
    UsageRecord,
)
from .prices import ModelPricing, PriceTable
from .usage import TokenUsage

__all__ = [
    "BudgetPlanner",
    "estimate_token_count",
    "ConversationBudget",
    "CostGovernor",
    "SpendDecision",
    "CostBreakdown",
    "CostLimits",
    "CostReport",
    "ReportPeriod",
    "UsageLedger",
    "UsageRecord",
    "ModelPricing",
    "PriceTable",
    "TokenUsage",
]
