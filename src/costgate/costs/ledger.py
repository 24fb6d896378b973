"""
Usage ledger -- durable record of money spent.

Keeps day-keyed and task-keyed running totals plus the ordered usage
history, and writes the whole state through to `<data_dir>/usage.json`
after every recorded usage or limit change.

The in-memory state is authoritative for the process lifetime: a failed
write is logged, never raised. Missing or malformed storage on load is a
cold start. Records older than RETENTION_DAYS are purged on load.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Literal

import structlog

from .usage import TokenUsage

logger = structlog.get_logger()

RETENTION_DAYS = 30
LEDGER_FILENAME = "usage.json"

ReportPeriod = Literal["current_task", "today", "week", "month"]

_PERIOD_LABELS = {
    "today": "Today",
    "week": "Past Week",
    "month": "Past Month",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _day_key(moment: datetime | date | str) -> str:
    if isinstance(moment, str):
        return moment
    if isinstance(moment, datetime):
        return moment.astimezone(timezone.utc).date().isoformat()
    return moment.isoformat()


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class UsageRecord:
    """One recorded spend. Immutable once written."""

    timestamp: datetime
    task_id: str
    cost: float
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "task_id": self.task_id,
            "cost": self.cost,
            "tokens": {
                "input": self.input_tokens,
                "output": self.output_tokens,
                "reasoning": self.reasoning_tokens,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageRecord":
        tokens = data.get("tokens") or {}
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            task_id=str(data["task_id"]),
            cost=float(data["cost"]),
            input_tokens=int(tokens.get("input", 0) or 0),
            output_tokens=int(tokens.get("output", 0) or 0),
            reasoning_tokens=(
                int(tokens["reasoning"]) if tokens.get("reasoning") is not None else None
            ),
        )


@dataclass
class CostLimits:
    """Process-wide spending ceilings in USD. None means no ceiling."""

    daily: float | None = None
    per_task: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        return asdict(self)


@dataclass
class CostBreakdown:
    """Aggregated spend for one day (or one record in a task report)."""

    date: str
    cost: float
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "cost": round(self.cost, 6),
            "tokens": {
                "input": self.input_tokens,
                "output": self.output_tokens,
                "reasoning": self.reasoning_tokens,
            },
        }


@dataclass
class CostReport:
    """Spend report for a period, with current limits and remaining headroom."""

    period: str
    total_cost: float
    breakdown: list[CostBreakdown] = field(default_factory=list)
    limits: CostLimits = field(default_factory=CostLimits)
    remaining_daily: float | None = None
    remaining_task: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "total_cost": round(self.total_cost, 6),
            "breakdown": [item.to_dict() for item in self.breakdown],
            "limits": self.limits.to_dict(),
            "remaining": {
                "daily": self.remaining_daily,
                "task": self.remaining_task,
            },
        }


class UsageLedger:
    """Owns all persisted spend state.

    Other components reach it through the CostGovernor; the ledger itself
    performs no allow/deny decisions.
    """

    def __init__(
        self,
        data_dir: Path | str,
        limits: CostLimits | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the ledger and load persisted state if present.

        Args:
            data_dir: Directory holding usage.json (created on first write)
            limits: Initial limits; persisted limits take precedence on load
            clock: Returns the current time (UTC); injectable for tests
        """
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / LEDGER_FILENAME
        self._clock = clock or _utcnow
        self._limits = CostLimits(**asdict(limits)) if limits else CostLimits()
        self._daily: dict[str, float] = {}
        self._tasks: dict[str, float] = {}
        self._history: list[UsageRecord] = []
        self._current_task_id: str | None = None
        self._log = logger.bind(component="usage_ledger", path=str(self.path))

        self._load()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_usage(self, task_id: str, usage: TokenUsage) -> UsageRecord:
        """Append a usage record, update running totals and persist.

        Args:
            task_id: Task the spend belongs to
            usage: Normalized usage of the call

        Returns:
            The UsageRecord written
        """
        now = self._clock()
        day = _day_key(now)
        cost = float(usage.estimated_cost)

        self._daily[day] = self._daily.get(day, 0.0) + cost
        self._tasks[task_id] = self._tasks.get(task_id, 0.0) + cost

        record = UsageRecord(
            timestamp=now,
            task_id=task_id,
            cost=cost,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            reasoning_tokens=usage.reasoning_tokens,
        )
        self._history.append(record)
        self._current_task_id = task_id

        self._log.debug(
            "ledger.recorded",
            task_id=task_id,
            cost_usd=round(cost, 6),
            daily_total_usd=round(self._daily[day], 6),
            task_total_usd=round(self._tasks[task_id], 6),
        )
        self._persist()
        return record

    def start_task(self, task_id: str) -> None:
        """Mark task_id as the active task (used by the current-task report)."""
        self._current_task_id = task_id

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def daily_total(self, day: datetime | date | str | None = None) -> float:
        """Total spend for a UTC day (today if omitted). Zero for unseen days."""
        key = _day_key(day if day is not None else self._clock())
        return self._daily.get(key, 0.0)

    def task_total(self, task_id: str) -> float:
        """Total spend for a task. Zero for unseen tasks."""
        return self._tasks.get(task_id, 0.0)

    @property
    def current_task_id(self) -> str | None:
        return self._current_task_id

    @property
    def history(self) -> list[UsageRecord]:
        return list(self._history)

    @property
    def limits(self) -> CostLimits:
        """Copy of the current limits."""
        return CostLimits(**asdict(self._limits))

    def remaining_daily(self) -> float | None:
        """Headroom under the daily limit today, or None without a daily limit."""
        if self._limits.daily is None:
            return None
        return max(0.0, self._limits.daily - self.daily_total())

    def remaining_task(self, task_id: str | None = None) -> float | None:
        """Headroom under the per-task limit, or None without a per-task limit."""
        if self._limits.per_task is None:
            return None
        task_id = task_id or self._current_task_id
        spent = self.task_total(task_id) if task_id else 0.0
        return max(0.0, self._limits.per_task - spent)

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def update_limits(
        self,
        daily: float | None = None,
        per_task: float | None = None,
    ) -> CostLimits:
        """Merge the given limits into the current ones and persist.

        Arguments left as None keep their current value.
        """
        if daily is not None:
            self._limits.daily = float(daily)
        if per_task is not None:
            self._limits.per_task = float(per_task)
        self._log.info("ledger.limits_updated", **self._limits.to_dict())
        self._persist()
        return self.limits

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_report(self, period: ReportPeriod) -> CostReport:
        """Build a spend report for the given period.

        Args:
            period: "current_task", "today", "week" or "month"

        Returns:
            CostReport. Time-windowed periods aggregate per UTC day,
            ascending; the task report lists each record of the active task.

        Raises:
            ValueError: On an unknown period
        """
        if period == "current_task":
            if not self._current_task_id:
                return CostReport(
                    period="No current task",
                    total_cost=0.0,
                    limits=self.limits,
                    remaining_daily=self._limits.daily,
                    remaining_task=self._limits.per_task,
                )
            return self._task_report(self._current_task_id)

        if period not in _PERIOD_LABELS:
            raise ValueError(f"Unknown report period: {period!r}")

        start = self._window_start(period)
        records = [r for r in self._history if r.timestamp >= start]

        return CostReport(
            period=_PERIOD_LABELS[period],
            total_cost=sum(r.cost for r in records),
            breakdown=self._aggregate_by_day(records),
            limits=self.limits,
            remaining_daily=self.remaining_daily(),
            remaining_task=self.remaining_task(),
        )

    def _window_start(self, period: str) -> datetime:
        now = self._clock()
        if period == "today":
            return now.astimezone(timezone.utc).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
        if period == "week":
            return now - timedelta(days=7)
        return now - timedelta(days=RETENTION_DAYS)

    def _task_report(self, task_id: str) -> CostReport:
        records = [r for r in self._history if r.task_id == task_id]
        breakdown = [
            CostBreakdown(
                date=r.timestamp.isoformat(),
                cost=r.cost,
                input_tokens=r.input_tokens,
                output_tokens=r.output_tokens,
                reasoning_tokens=r.reasoning_tokens,
            )
            for r in records
        ]
        return CostReport(
            period=f"Task: {task_id}",
            total_cost=self.task_total(task_id),
            breakdown=breakdown,
            limits=self.limits,
            remaining_daily=self.remaining_daily(),
            remaining_task=self.remaining_task(task_id),
        )

    @staticmethod
    def _aggregate_by_day(records: list[UsageRecord]) -> list[CostBreakdown]:
        by_day: dict[str, CostBreakdown] = {}
        for record in records:
            day = _day_key(record.timestamp)
            entry = by_day.get(day)
            if entry is None:
                entry = by_day[day] = CostBreakdown(date=day, cost=0.0)
            entry.cost += record.cost
            entry.input_tokens += record.input_tokens
            entry.output_tokens += record.output_tokens
            if record.reasoning_tokens:
                entry.reasoning_tokens = (entry.reasoning_tokens or 0) + record.reasoning_tokens
        return [by_day[day] for day in sorted(by_day)]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable copy of the full ledger state."""
        return {
            "limits": self._limits.to_dict(),
            "daily_usage": dict(self._daily),
            "task_usage": {task: v for task, v in self._tasks.items() if v},
            "history": [r.to_dict() for r in self._history],
            "current_task_id": self._current_task_id,
        }

    def flush(self) -> bool:
        """Write the current state to disk. Returns False if the write failed."""
        return self._persist()

    def _persist(self) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".json.tmp")
            tmp_path.write_text(
                json.dumps(self.snapshot(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            tmp_path.replace(self.path)
            return True
        except OSError as e:
            self._log.warning("ledger.persist_failed", error=str(e))
            return False

    def _load(self) -> None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as e:
            self._log.warning("ledger.load_failed", error=str(e))
            return

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("ledger root is not an object")
            limits = data.get("limits") or {}
            if not isinstance(limits, dict):
                raise ValueError("limits is not an object")
            daily_limit = (
                _optional_float(limits["daily"]) if "daily" in limits else self._limits.daily
            )
            task_limit = (
                _optional_float(limits["per_task"])
                if "per_task" in limits
                else self._limits.per_task
            )
            daily = {str(k): float(v) for k, v in (data.get("daily_usage") or {}).items()}
            tasks = {str(k): float(v) for k, v in (data.get("task_usage") or {}).items()}
            history = [UsageRecord.from_dict(item) for item in data.get("history") or []]
            current_task_id = data.get("current_task_id")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # Malformed storage is a cold start, not an error
            self._log.info("ledger.malformed_state_ignored", error=str(e))
            return

        self._limits = CostLimits(daily=daily_limit, per_task=task_limit)
        self._daily = daily
        self._tasks = tasks
        self._history = history
        self._current_task_id = current_task_id
        self._purge_expired()

        self._log.debug(
            "ledger.loaded",
            records=len(self._history),
            days=len(self._daily),
            tasks=len(self._tasks),
        )

    def _purge_expired(self) -> None:
        cutoff = self._clock() - timedelta(days=RETENTION_DAYS)
        cutoff_day = _day_key(cutoff)
        before = len(self._history)
        # Whole UTC days on both sides so daily totals match the kept history
        self._history = [r for r in self._history if _day_key(r.timestamp) >= cutoff_day]
        self._daily = {day: v for day, v in self._daily.items() if day >= cutoff_day}
        self._tasks = {task: v for task, v in self._tasks.items() if v}
        purged = before - len(self._history)
        if purged:
            self._log.info("ledger.purged", records=purged, cutoff=cutoff.isoformat())


def _optional_float(value: object) -> float | None:
    return float(value) if value is not None else None
