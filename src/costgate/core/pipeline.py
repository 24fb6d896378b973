"""
Pipeline orchestrator -- one request through every component.

Single-shot consult:

1. Estimate the prompt size and derive a token ceiling from the remaining
   daily budget (BudgetPlanner), capped by the requested max tokens.
2. Digest attached resources within the safe-input ceiling.
3. Assemble the prompt: resources, then context, then the request.
4. Pre-flight governor check on an estimated usage (not recorded).
5. Model call through the gateway.
6. Check-and-record of the actual usage. Spend the governor refuses after
   the fact is still written to the ledger as an overrun.

Conversation turns follow the same shape with the windowed history of the
conversation as input; a successful reply is appended to the history and
its cost accumulated on the conversation.

The orchestrator is the error boundary: every exception becomes a
PipelineResult with status "error" (or "not_found") carrying the task id.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

from ..config.schema import AppConfig, ReasoningEffort
from ..costs.budget import BudgetPlanner, estimate_token_count
from ..costs.governor import ConversationBudget, CostGovernor, SpendDecision
from ..costs.ledger import CostLimits, UsageLedger
from ..costs.prices import PriceTable
from ..costs.usage import TokenUsage
from ..llm.gateway import ModelCallRequest, ModelCallResult, ModelGateway
from .conversations import ConversationNotFoundError, ConversationStore
from .resources import ResourceNormalizer

logger = structlog.get_logger()

ResultStatus = Literal["ok", "needs_confirmation", "blocked", "error", "not_found"]

SUMMARY_INSTRUCTIONS = (
    "Summarize the following conversation so it can replace the original turns "
    "as context for later messages. Keep decisions, facts, open questions and "
    "any code or identifiers that were agreed on. Be concise."
)

# Characters of each message kept in a mechanical summary
_MECHANICAL_SNIPPET = 200


class ConsultRequest(BaseModel):
    """A normalized single-shot request."""

    prompt: str = Field(min_length=1)
    context: str | None = None
    reasoning_effort: ReasoningEffort | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    task_budget: float | None = Field(default=None, gt=0)
    confirm_spending: bool = False
    resources: Any = None
    stream: bool = False

    model_config = {"extra": "forbid"}


@dataclass
class PipelineResult:
    """Outcome of one orchestrator operation."""

    status: ResultStatus
    task_id: str | None = None
    text: str | None = None
    conversation_id: str | None = None
    usage: dict[str, Any] | None = None
    warning: str | None = None
    reason: str | None = None
    shortfall: float | None = None
    estimated_cost: float | None = None
    remaining: dict[str, float | None] | None = None
    model: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status}
        for key in (
            "task_id",
            "conversation_id",
            "text",
            "usage",
            "warning",
            "reason",
            "shortfall",
            "estimated_cost",
            "remaining",
            "model",
        ):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.data:
            result["data"] = self.data
        return result


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def conversation_task_id(conversation_id: str) -> str:
    return f"conv_{conversation_id}_{int(time.time() * 1000)}"


def assemble_prompt(prompt: str, context: str | None = None, resources: str | None = None) -> str:
    """Resources, context and request in that order; a bare prompt when alone."""
    if not resources and not context:
        return prompt
    sections = []
    if resources:
        sections.append(f"Attached Files/Resources:\n{resources}")
    if context:
        sections.append(f"Context:\n{context}")
    sections.append(f"Request:\n{prompt}")
    return "\n\n".join(sections)


def _remaining(decision: SpendDecision) -> dict[str, float | None]:
    return {
        "daily": decision.remaining_daily,
        "task": decision.remaining_task,
        "conversation": decision.remaining_conversation,
    }


class Pipeline:
    """Ties the ledger, governor, planner, normalizer, gateway and store together."""

    def __init__(
        self,
        config: AppConfig,
        governor: CostGovernor,
        gateway: ModelGateway,
        conversations: ConversationStore,
        prices: PriceTable,
        normalizer: ResourceNormalizer | None = None,
    ) -> None:
        self.config = config
        self.governor = governor
        self.gateway = gateway
        self.conversations = conversations
        self.prices = prices
        self.normalizer = normalizer or ResourceNormalizer(config.resources)
        self.log = logger.bind(component="pipeline")

    @classmethod
    def from_config(cls, config: AppConfig) -> "Pipeline":
        """Build every component from the application configuration."""
        prices = PriceTable(config.costs.prices_file)
        ledger = UsageLedger(
            config.costs.data_dir,
            limits=CostLimits(
                daily=config.costs.daily_limit_usd,
                per_task=config.costs.task_limit_usd,
            ),
        )
        return cls(
            config=config,
            governor=CostGovernor(ledger, config.costs),
            gateway=ModelGateway(config.llm, prices),
            conversations=ConversationStore(
                max_conversations=config.conversations.max_conversations,
                max_messages=config.conversations.max_messages,
                default_context_window=config.conversations.context_window,
            ),
            prices=prices,
            normalizer=ResourceNormalizer(config.resources),
        )

    # ------------------------------------------------------------------
    # Budget helpers
    # ------------------------------------------------------------------

    def _planner(self) -> BudgetPlanner:
        return BudgetPlanner(self.prices.get_prices(self.config.llm.model), self.config.budget)

    def _token_ceiling(self, planner: BudgetPlanner, prompt_tokens: int, requested: int | None) -> int:
        """Smaller of the requested max tokens and what the daily budget affords."""
        requested = requested or self.config.budget.default_max_tokens
        remaining = self.governor.remaining_daily()
        if remaining is None:
            return requested
        affordable = planner.max_tokens_from_budget(remaining, prompt_tokens)
        if affordable < requested:
            self.log.info(
                "pipeline.max_tokens_adjusted",
                requested=requested,
                effective=affordable,
                remaining_daily_usd=round(remaining, 4),
            )
        return min(requested, affordable)

    def _refusal(
        self,
        decision: SpendDecision,
        task_id: str,
        usage: TokenUsage,
        conversation_id: str | None = None,
    ) -> PipelineResult:
        status: ResultStatus = "blocked" if decision.blocked else "needs_confirmation"
        return PipelineResult(
            status=status,
            task_id=task_id,
            conversation_id=conversation_id,
            reason=decision.reason,
            shortfall=decision.shortfall,
            estimated_cost=round(usage.estimated_cost, 6),
            remaining=_remaining(decision),
        )

    def _settle(
        self,
        task_id: str,
        call: ModelCallResult,
        confirmed: bool,
        task_limit: float | None = None,
        conversation: ConversationBudget | None = None,
        conversation_id: str | None = None,
    ) -> PipelineResult:
        """Check-and-record the actual usage of a completed call."""
        decision = self.governor.check_and_record(
            task_id,
            call.usage,
            confirmed=confirmed,
            task_limit=task_limit,
            conversation=conversation,
        )
        if not decision.allowed:
            self.governor.record_overrun(task_id, call.usage)
            result = self._refusal(decision, task_id, call.usage, conversation_id)
            result.usage = call.usage.breakdown()
            result.model = call.model
            return result

        return PipelineResult(
            status="ok",
            task_id=task_id,
            conversation_id=conversation_id,
            text=call.text,
            usage=call.usage.breakdown(),
            warning=decision.warning,
            remaining=_remaining(decision),
            model=call.model,
        )

    def _error(
        self,
        error: Exception,
        task_id: str | None,
        conversation_id: str | None = None,
        operation: str = "consult",
    ) -> PipelineResult:
        self.log.error(
            "pipeline.failed",
            operation=operation,
            task_id=task_id,
            conversation_id=conversation_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        remaining = self.governor.remaining_daily()
        return PipelineResult(
            status="error",
            task_id=task_id,
            conversation_id=conversation_id,
            reason=str(error) or type(error).__name__,
            remaining={"daily": remaining},
        )

    @staticmethod
    def _not_found(error: ConversationNotFoundError, task_id: str | None = None) -> PipelineResult:
        return PipelineResult(
            status="not_found",
            task_id=task_id,
            conversation_id=error.conversation_id,
            reason=str(error),
        )

    # ------------------------------------------------------------------
    # Single-shot
    # ------------------------------------------------------------------

    def consult(self, request: ConsultRequest) -> PipelineResult:
        """Run one budget-governed model call for a standalone prompt."""
        task_id = new_task_id()
        self.governor.start_task(task_id)
        self.log.info(
            "pipeline.consult.start",
            task_id=task_id,
            confirmed=request.confirm_spending,
            task_budget=request.task_budget,
        )

        try:
            planner = self._planner()
            prompt_tokens = estimate_token_count(request.prompt + (request.context or ""))
            max_tokens = self._token_ceiling(planner, prompt_tokens, request.max_tokens)
            safe_input = planner.safe_input_tokens(max_tokens, prompt_tokens)

            digest = self.normalizer.normalize(request.resources, max_total_tokens=safe_input)
            prompt = assemble_prompt(request.prompt, request.context, digest.text)

            input_tokens = estimate_token_count(prompt)
            if input_tokens > safe_input:
                self.log.warning(
                    "pipeline.input_over_safe_limit",
                    task_id=task_id,
                    input_tokens=input_tokens,
                    safe_input_tokens=safe_input,
                )

            estimate = planner.project_usage(input_tokens, max_tokens)
            pre = self.governor.evaluate(
                task_id,
                estimate,
                confirmed=request.confirm_spending,
                task_limit=request.task_budget,
            )
            if not pre.allowed:
                self.log.info(
                    "pipeline.consult.refused",
                    task_id=task_id,
                    blocked=pre.blocked,
                    estimated_cost_usd=estimate.estimated_cost,
                )
                return self._refusal(pre, task_id, estimate)

            call = self.gateway.create_response(
                ModelCallRequest(
                    input=prompt,
                    temperature=request.temperature,
                    reasoning_effort=request.reasoning_effort
                    or self.config.llm.default_reasoning_effort,
                    max_tokens=max_tokens,
                    stream=request.stream,
                )
            )
            result = self._settle(
                task_id,
                call,
                confirmed=request.confirm_spending,
                task_limit=request.task_budget,
            )
            if digest.included or digest.omitted:
                result.data["resources"] = {
                    "included": digest.included,
                    "omitted": digest.omitted,
                    "failed": digest.failed,
                }
            self.log.info("pipeline.consult.done", task_id=task_id, status=result.status)
            return result
        except Exception as e:
            return self._error(e, task_id)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def start_conversation(
        self,
        topic: str,
        instructions: str | None = None,
        budget_limit: float | None = None,
    ) -> PipelineResult:
        try:
            conversation_id = self.conversations.start(topic, instructions, budget_limit)
        except Exception as e:
            return self._error(e, None, operation="start_conversation")
        return PipelineResult(
            status="ok",
            conversation_id=conversation_id,
            data={"topic": topic},
        )

    def continue_conversation(
        self,
        conversation_id: str,
        message: str,
        confirm_spending: bool = False,
        reasoning_effort: ReasoningEffort | None = None,
        stream: bool = False,
    ) -> PipelineResult:
        """Send one user turn and append the reply to the conversation."""
        task_id = conversation_task_id(conversation_id)
        try:
            conversation = self.conversations.get(conversation_id)
        except ConversationNotFoundError as e:
            return self._not_found(e, task_id)

        self.governor.start_task(task_id)
        try:
            messages = self.conversations.format_for_api(conversation_id, new_message=message)
            instructions = self.conversations.get_instructions(conversation_id)
            metadata = conversation.metadata
            budget = (
                ConversationBudget(limit=metadata.budget_limit, spent=metadata.total_cost)
                if metadata.budget_limit is not None
                else None
            )

            planner = self._planner()
            input_tokens = estimate_token_count(
                "\n".join(m["content"] for m in messages) + (instructions or "")
            )
            max_tokens = self._token_ceiling(planner, input_tokens, None)
            estimate = planner.project_usage(input_tokens, max_tokens)
            pre = self.governor.evaluate(
                task_id, estimate, confirmed=confirm_spending, conversation=budget
            )
            if not pre.allowed:
                return self._refusal(pre, task_id, estimate, conversation_id)

            call = self.gateway.create_response(
                ModelCallRequest(
                    input=messages,
                    instructions=instructions,
                    temperature=self.config.llm.default_temperature,
                    reasoning_effort=reasoning_effort
                    or self.config.llm.default_reasoning_effort,
                    stream=stream,
                )
            )
            result = self._settle(
                task_id,
                call,
                confirmed=confirm_spending,
                conversation=budget,
                conversation_id=conversation_id,
            )

            # Spend is attributed to the conversation even when the reply is withheld
            updated = self.conversations.update_metadata(
                conversation_id,
                total_cost=call.usage.estimated_cost,
                token_count=call.usage.total_tokens,
            )
            if result.ok:
                self.conversations.add_message(conversation_id, "user", message)
                self.conversations.add_message(conversation_id, "assistant", call.text)
            result.data["conversation"] = {
                "total_cost": round(updated.total_cost, 6),
                "token_count": updated.token_count,
                "budget_limit": updated.budget_limit,
            }
            return result
        except ConversationNotFoundError as e:
            return self._not_found(e, task_id)
        except Exception as e:
            return self._error(e, task_id, conversation_id, operation="continue_conversation")

    def set_conversation_options(
        self,
        conversation_id: str,
        budget_limit: float | None = None,
        context_limit: int | None = None,
    ) -> PipelineResult:
        try:
            metadata = self.conversations.set_options(
                conversation_id, budget_limit=budget_limit, context_limit=context_limit
            )
        except ConversationNotFoundError as e:
            return self._not_found(e)
        return PipelineResult(
            status="ok",
            conversation_id=conversation_id,
            data={
                "budget_limit": metadata.budget_limit,
                "context_limit": metadata.context_limit,
            },
        )

    def get_conversation_metadata(self, conversation_id: str) -> PipelineResult:
        try:
            snapshot = self.conversations.get_metadata(conversation_id)
        except ConversationNotFoundError as e:
            return self._not_found(e)
        return PipelineResult(status="ok", conversation_id=conversation_id, data=snapshot)

    def summarize_conversation(
        self,
        conversation_id: str,
        keep_recent: int | None = None,
        confirm_spending: bool = False,
    ) -> PipelineResult:
        """Fold older turns into one summary message, keeping recent ones verbatim.

        The summary comes from the model. Spend is checked before the call and
        a refusal leaves the conversation untouched. When the call itself fails
        or its settled spend is refused, a mechanical digest of the older turns
        is used instead.
        """
        keep = keep_recent if keep_recent is not None else self.config.conversations.summary_keep_recent
        keep = max(0, keep)
        task_id = conversation_task_id(conversation_id)
        try:
            conversation = self.conversations.get(conversation_id)
        except ConversationNotFoundError as e:
            return self._not_found(e, task_id)

        history = [m for m in conversation.messages if m.role != "developer"]
        older = history[:-keep] if keep else history
        if not older:
            return PipelineResult(
                status="ok",
                task_id=task_id,
                conversation_id=conversation_id,
                data={"folded": 0, "summary": None, "mechanical": False},
            )

        transcript = "\n\n".join(f"{m.role}: {m.content}" for m in older)
        mechanical = False
        usage: dict[str, Any] | None = None
        warning: str | None = None

        self.governor.start_task(task_id)
        metadata = conversation.metadata
        budget = (
            ConversationBudget(limit=metadata.budget_limit, spent=metadata.total_cost)
            if metadata.budget_limit is not None
            else None
        )
        planner = self._planner()
        input_tokens = estimate_token_count(transcript + SUMMARY_INSTRUCTIONS)
        max_tokens = self._token_ceiling(planner, input_tokens, None)
        estimate = planner.project_usage(input_tokens, max_tokens)
        pre = self.governor.evaluate(
            task_id, estimate, confirmed=confirm_spending, conversation=budget
        )
        if not pre.allowed:
            return self._refusal(pre, task_id, estimate, conversation_id)

        try:
            call = self.gateway.create_response(
                ModelCallRequest(
                    input=transcript,
                    instructions=SUMMARY_INSTRUCTIONS,
                    reasoning_effort="low",
                )
            )
            settled = self._settle(task_id, call, confirmed=confirm_spending)
            self.conversations.update_metadata(
                conversation_id,
                total_cost=call.usage.estimated_cost,
                token_count=call.usage.total_tokens,
            )
            usage = settled.usage
            warning = settled.warning or settled.reason
            summary = call.text.strip() if settled.ok else ""
        except Exception as e:
            self.log.warning(
                "pipeline.summary_model_failed",
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            summary = ""

        if not summary:
            mechanical = True
            summary = mechanical_summary(older)

        try:
            folded = self.conversations.compact(conversation_id, summary, keep_recent=keep)
        except ConversationNotFoundError as e:
            return self._not_found(e, task_id)

        return PipelineResult(
            status="ok",
            task_id=task_id,
            conversation_id=conversation_id,
            usage=usage,
            warning=warning,
            data={"folded": folded, "summary": summary, "mechanical": mechanical},
        )

    # ------------------------------------------------------------------
    # Costs and diagnostics
    # ------------------------------------------------------------------

    def cost_report(self, period: str = "today") -> PipelineResult:
        try:
            report = self.governor.report(period)  # type: ignore[arg-type]
        except Exception as e:
            return self._error(e, None, operation="cost_report")
        data = report.to_dict()
        data["conversations"] = self.conversations.stats()
        return PipelineResult(status="ok", task_id=self.governor.ledger.current_task_id, data=data)

    def set_cost_limits(
        self,
        daily: float | None = None,
        per_task: float | None = None,
    ) -> PipelineResult:
        try:
            limits = self.governor.update_limits(daily=daily, per_task=per_task)
        except Exception as e:
            return self._error(e, None, operation="set_cost_limits")
        return PipelineResult(status="ok", data={"limits": limits.to_dict()})

    def check_connection(self) -> PipelineResult:
        connected = self.gateway.test_connection()
        return PipelineResult(
            status="ok" if connected else "error",
            model=self.config.llm.model,
            reason=None if connected else "Model connection test failed",
            data={"connected": connected},
        )

    def flush(self) -> bool:
        return self.governor.flush()


def mechanical_summary(messages: list[Any]) -> str:
    """One line per message, each cut to a short snippet."""
    lines = []
    for message in messages:
        text = " ".join(message.content.split())
        if len(text) > _MECHANICAL_SNIPPET:
            text = text[:_MECHANICAL_SNIPPET].rstrip() + "..."
        lines.append(f"- {message.role}: {text}")
    return "\n".join(lines)
