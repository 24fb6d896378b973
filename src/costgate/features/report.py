"""
Cost Report -- renders a CostReport in multiple formats.

Supports JSON (for scripts and CI parsing) and Markdown (human-readable).
"""

import json
from typing import Any

from ..costs.ledger import CostReport


def _money(value: float | None) -> str:
    return "unlimited" if value is None else f"${value:.4f}"


class CostReportFormatter:
    """Formats a CostReport, optionally with conversation statistics."""

    def __init__(self, report: CostReport, conversations: dict[str, Any] | None = None):
        """Initialize the formatter.

        Args:
            report: CostReport produced by the ledger.
            conversations: Conversation store statistics to append.
        """
        self.report = report
        self.conversations = conversations

    def to_dict(self) -> dict[str, Any]:
        data = self.report.to_dict()
        if self.conversations is not None:
            data["conversations"] = self.conversations
        return data

    def to_json(self) -> str:
        """Report in JSON format.

        Returns:
            Indented JSON string.
        """
        return json.dumps(self.to_dict(), indent=2, default=str, ensure_ascii=False)

    def to_markdown(self) -> str:
        """Human-readable Markdown report.

        Returns:
            String with the report formatted in Markdown.
        """
        r = self.report
        lines = [
            "# Cost Report",
            "",
            "## Summary",
            "| Field | Value |",
            "|-------|-------|",
            f"| Period | {r.period} |",
            f"| Total Cost | ${r.total_cost:.4f} |",
            f"| Daily Limit | {_money(r.limits.daily)} |",
            f"| Task Limit | {_money(r.limits.per_task)} |",
            f"| Remaining Today | {_money(r.remaining_daily)} |",
        ]
        if r.remaining_task is not None:
            lines.append(f"| Remaining (Task) | {_money(r.remaining_task)} |")
        lines.append("")

        if r.breakdown:
            lines.append("## Breakdown")
            lines.append("| Date | Cost | Input | Output | Reasoning |")
            lines.append("|------|------|-------|--------|-----------|")
            for item in r.breakdown:
                reasoning = item.reasoning_tokens if item.reasoning_tokens is not None else "-"
                lines.append(
                    f"| {item.date} | ${item.cost:.4f} | {item.input_tokens} | "
                    f"{item.output_tokens} | {reasoning} |"
                )
            lines.append("")
        else:
            lines.append("_No usage recorded for this period._")
            lines.append("")

        if self.conversations:
            c = self.conversations
            lines.append("## Conversations")
            lines.append(
                f"- **{c.get('total_conversations', 0)} conversations**, "
                f"{c.get('total_messages', 0)} messages"
            )
            lines.append(
                f"- Cost ${c.get('total_cost', 0):.4f}, {c.get('total_tokens', 0)} tokens"
            )
            lines.append("")

        return "\n".join(lines)
