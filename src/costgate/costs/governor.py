"""
Cost governor -- allow / warn / confirm decisions for a spend.

Every call is evaluated on its own against the current ledger totals:

- Runaway backstop: task spend beyond runaway_multiplier x the per-task
  limit (or a turn beyond conversation_runaway_multiplier x the remaining
  conversation budget) is hard-blocked. Confirmation does not override it.
- Daily ceiling: with remaining daily budget at or below confirm_threshold
  of the limit, or a spend larger than what remains, the call needs an
  explicit confirmation.
- Conversation budget: a turn larger than the remaining conversation
  budget needs confirmation, on top of the global checks.
- Warnings (never blocking): daily or task usage reaching warn_threshold
  or the full limit.

check_and_record() records the usage in the same step as the decision.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from ..config.schema import CostsConfig
from .ledger import CostLimits, CostReport, ReportPeriod, UsageLedger, UsageRecord
from .usage import TokenUsage

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConversationBudget:
    """Per-conversation ceiling layered on top of the global limits."""

    limit: float
    spent: float = 0.0

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit - self.spent)


@dataclass
class SpendDecision:
    """Outcome of a governor check.

    allowed=False with needs_confirmation=True is the soft refusal: the
    caller may retry with confirmation. blocked=True is the hard refusal.
    """

    allowed: bool
    needs_confirmation: bool = False
    blocked: bool = False
    reason: str | None = None
    warning: str | None = None
    shortfall: float | None = None
    remaining_daily: float | None = None
    remaining_task: float | None = None
    remaining_conversation: float | None = None
    recorded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "needs_confirmation": self.needs_confirmation,
            "blocked": self.blocked,
            "reason": self.reason,
            "warning": self.warning,
            "shortfall": self.shortfall,
            "remaining": {
                "daily": self.remaining_daily,
                "task": self.remaining_task,
                "conversation": self.remaining_conversation,
            },
        }


class CostGovernor:
    """Single entry point to the usage ledger for spend decisions and reports."""

    def __init__(self, ledger: UsageLedger, config: CostsConfig | None = None) -> None:
        self.ledger = ledger
        self.config = config or CostsConfig()
        self._log = logger.bind(component="cost_governor")

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate(
        self,
        task_id: str,
        usage: TokenUsage,
        confirmed: bool = False,
        task_limit: float | None = None,
        conversation: ConversationBudget | None = None,
    ) -> SpendDecision:
        """Decide on a prospective spend without recording it.

        Args:
            task_id: Task the spend belongs to
            usage: Estimated or actual usage of the call
            confirmed: Caller already confirmed spending past the daily check
            task_limit: Per-call task ceiling overriding the configured one
            conversation: Conversation budget to check in addition

        Returns:
            SpendDecision
        """
        cost = usage.estimated_cost
        limits = self.ledger.limits
        daily_limit = limits.daily
        per_task = task_limit if task_limit is not None else limits.per_task

        daily_spent = self.ledger.daily_total()
        task_spent = self.ledger.task_total(task_id)
        remaining_daily = (
            max(0.0, daily_limit - daily_spent) if daily_limit is not None else None
        )
        remaining_task = max(0.0, per_task - task_spent) if per_task is not None else None
        remaining_conversation = conversation.remaining if conversation else None

        def decision(**kwargs: Any) -> SpendDecision:
            return SpendDecision(
                remaining_daily=remaining_daily,
                remaining_task=remaining_task,
                remaining_conversation=remaining_conversation,
                **kwargs,
            )

        # Hard backstops first: no confirmation overrides them
        if per_task is not None and task_spent + cost > per_task * self.config.runaway_multiplier:
            reason = (
                f"Extremely high task spending blocked: ${task_spent + cost:.4f} would exceed "
                f"{self.config.runaway_multiplier:g}x the per-task limit of ${per_task:.2f}"
            )
            self._log.warning("governor.runaway_blocked", task_id=task_id, cost_usd=cost)
            return decision(allowed=False, blocked=True, reason=reason)

        if conversation is not None:
            threshold = conversation.remaining * self.config.conversation_runaway_multiplier
            if cost > threshold:
                reason = (
                    f"Extremely high conversation spending blocked: ${cost:.4f} for one turn "
                    f"exceeds {self.config.conversation_runaway_multiplier:g}x the remaining "
                    f"conversation budget of ${conversation.remaining:.4f}"
                )
                self._log.warning(
                    "governor.conversation_blocked", task_id=task_id, cost_usd=cost
                )
                return decision(allowed=False, blocked=True, reason=reason)

        if not confirmed:
            if daily_limit is not None and remaining_daily is not None:
                nearly_exhausted = remaining_daily <= daily_limit * self.config.confirm_threshold
                if nearly_exhausted or cost > remaining_daily:
                    reason = (
                        f"Daily budget nearly exhausted: ${remaining_daily:.2f} of "
                        f"${daily_limit:.2f} remaining, this request is estimated at "
                        f"${cost:.4f}"
                    )
                    self._log.info(
                        "governor.needs_confirmation",
                        task_id=task_id,
                        check="daily",
                        remaining_usd=remaining_daily,
                    )
                    return decision(
                        allowed=False,
                        needs_confirmation=True,
                        reason=reason,
                        shortfall=round(max(0.0, cost - remaining_daily), 6),
                    )

            if conversation is not None and cost > conversation.remaining:
                reason = (
                    f"Conversation budget exceeded: ${conversation.remaining:.4f} of "
                    f"${conversation.limit:.2f} remaining, this turn is estimated at ${cost:.4f}"
                )
                self._log.info(
                    "governor.needs_confirmation",
                    task_id=task_id,
                    check="conversation",
                    remaining_usd=conversation.remaining,
                )
                return decision(
                    allowed=False,
                    needs_confirmation=True,
                    reason=reason,
                    shortfall=round(cost - conversation.remaining, 6),
                )

        warning = self._warnings(cost, daily_limit, daily_spent, per_task, task_spent)
        return decision(allowed=True, warning=warning)

    def check_and_record(
        self,
        task_id: str,
        usage: TokenUsage,
        confirmed: bool = False,
        task_limit: float | None = None,
        conversation: ConversationBudget | None = None,
    ) -> SpendDecision:
        """Evaluate a spend and, when allowed, record it in the same step."""
        result = self.evaluate(
            task_id,
            usage,
            confirmed=confirmed,
            task_limit=task_limit,
            conversation=conversation,
        )
        if result.allowed:
            self.ledger.record_usage(task_id, usage)
            result.recorded = True
        return result

    def record_overrun(self, task_id: str, usage: TokenUsage) -> UsageRecord:
        """Record spend that already happened even though it was refused."""
        self._log.warning(
            "governor.overrun_recorded",
            task_id=task_id,
            cost_usd=round(usage.estimated_cost, 6),
        )
        return self.ledger.record_usage(task_id, usage)

    def _warnings(
        self,
        cost: float,
        daily_limit: float | None,
        daily_spent: float,
        per_task: float | None,
        task_spent: float,
    ) -> str | None:
        warnings: list[str] = []
        for label, limit, spent in (
            ("Daily", daily_limit, daily_spent),
            ("Task", per_task, task_spent),
        ):
            if not limit:
                continue
            ratio = (spent + cost) / limit
            if ratio >= 1.0:
                warnings.append(f"{label} usage at {ratio * 100:.1f}% of limit (limit reached)")
            elif ratio >= self.config.warn_threshold:
                warnings.append(f"{label} usage at {ratio * 100:.1f}% of limit")
        return "; ".join(warnings) or None

    # ------------------------------------------------------------------
    # Limits, tasks and reports
    # ------------------------------------------------------------------

    @property
    def limits(self) -> CostLimits:
        return self.ledger.limits

    def update_limits(
        self,
        daily: float | None = None,
        per_task: float | None = None,
    ) -> CostLimits:
        """Merge the provided limits into the current ones and persist them."""
        return self.ledger.update_limits(daily=daily, per_task=per_task)

    def start_task(self, task_id: str) -> None:
        self.ledger.start_task(task_id)

    def remaining_daily(self) -> float | None:
        return self.ledger.remaining_daily()

    def task_total(self, task_id: str) -> float:
        return self.ledger.task_total(task_id)

    def report(self, period: ReportPeriod) -> CostReport:
        return self.ledger.generate_report(period)

    def flush(self) -> bool:
        return self.ledger.flush()
