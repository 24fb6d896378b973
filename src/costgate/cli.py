"""
Command-line interface for costgate using Click.

A thin layer over the Pipeline: it loads the configuration, builds the
components and renders PipelineResult values. All budget decisions happen
below this layer.
"""

import json
import sys
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config.loader import ConfigError, load_config
from .config.schema import AppConfig
from .core.pipeline import ConsultRequest, Pipeline, PipelineResult
from .features.report import CostReportFormatter
from .logging import configure_logging

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_NEEDS_CONFIRMATION = 2
EXIT_CONFIG_ERROR = 3
EXIT_BLOCKED = 4
EXIT_INTERRUPTED = 130

_EXIT_BY_STATUS = {
    "ok": EXIT_SUCCESS,
    "needs_confirmation": EXIT_NEEDS_CONFIRMATION,
    "blocked": EXIT_BLOCKED,
    "not_found": EXIT_FAILED,
    "error": EXIT_FAILED,
}

_REPORT_PERIODS = ("current_task", "today", "week", "month")


def _config_option(fn: Any) -> Any:
    return click.option(
        "-c",
        "--config",
        type=click.Path(exists=True, path_type=Path),
        help="Path to the YAML configuration file",
    )(fn)


def _verbose_option(fn: Any) -> Any:
    return click.option(
        "-v",
        "--verbose",
        count=True,
        help="Verbose level (-v, -vv, -vvv)",
    )(fn)


def _load(config: Path | None, verbose: int, **cli_args: Any) -> AppConfig:
    """Load configuration and configure logging, exiting on configuration errors."""
    try:
        app_config = load_config(
            config_path=config,
            cli_args={"verbose": verbose, **cli_args},
        )
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    configure_logging(app_config.logging)
    return app_config


def _print_result(result: PipelineResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str, ensure_ascii=False))
        return

    if result.status == "ok":
        if result.text is not None:
            click.echo(result.text)
        if result.warning:
            click.echo(f"\nWarning: {result.warning}", err=True)
        if result.usage:
            click.echo(
                f"\nTokens: {result.usage['tokens']} | Cost: ${result.usage['cost']:.4f} | "
                f"Task: {result.task_id}",
                err=True,
            )
        return

    if result.status == "needs_confirmation":
        click.echo("Cost confirmation required", err=True)
        click.echo(f"\n{result.reason}", err=True)
        click.echo("\nTo proceed, run the command again with --confirm", err=True)
        if result.estimated_cost is not None:
            click.echo(f"\nEstimated cost: ${result.estimated_cost:.4f}", err=True)
    elif result.status == "blocked":
        click.echo(f"Blocked: {result.reason}", err=True)
    else:
        click.echo(f"Error: {result.reason}", err=True)
    if result.task_id:
        click.echo(f"Task ID: {result.task_id}", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="costgate")
def main() -> None:
    """costgate - Budget-governed gateway to reasoning models.

    Every call is priced, checked against daily and per-task budgets and
    recorded in a persistent usage ledger.
    """
    pass


@main.command()
@click.argument("prompt", required=True)
@_config_option
@_verbose_option
@click.option("--context", help="Extra context placed before the request")
@click.option(
    "--effort",
    type=click.Choice(["minimal", "low", "medium", "high"]),
    help="Reasoning effort for the primary model",
)
@click.option("--temperature", type=float, help="Sampling temperature (fallback models only)")
@click.option("--max-tokens", type=int, help="Requested output-length ceiling")
@click.option("--task-budget", type=float, help="Per-task spending ceiling for this call (USD)")
@click.option("--confirm", is_flag=True, help="Confirm spending past the daily check")
@click.option(
    "--resource",
    "resources",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Attach a file (repeatable)",
)
@click.option("--model", help="Primary model (overrides config)")
@click.option("--data-dir", type=click.Path(path_type=Path), help="Usage ledger directory")
@click.option("--stream", is_flag=True, help="Stream the model response")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def consult(
    prompt: str,
    config: Path | None,
    verbose: int,
    context: str | None,
    effort: str | None,
    temperature: float | None,
    max_tokens: int | None,
    task_budget: float | None,
    confirm: bool,
    resources: tuple[Path, ...],
    model: str | None,
    data_dir: Path | None,
    stream: bool,
    as_json: bool,
) -> None:
    """Send a single budget-governed PROMPT to the model."""
    app_config = _load(config, verbose, model=model, data_dir=data_dir)

    attached = [
        {"name": path.name, "text": path.read_text(encoding="utf-8", errors="replace")}
        for path in resources
    ]

    try:
        pipeline = Pipeline.from_config(app_config)
        result = pipeline.consult(
            ConsultRequest(
                prompt=prompt,
                context=context,
                reasoning_effort=effort,
                temperature=temperature,
                max_tokens=max_tokens,
                task_budget=task_budget,
                confirm_spending=confirm,
                resources={"resources": attached} if attached else None,
                stream=stream,
            )
        )
        pipeline.flush()
    except KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        sys.exit(EXIT_INTERRUPTED)

    _print_result(result, as_json)
    sys.exit(_EXIT_BY_STATUS[result.status])


@main.command()
@_config_option
@_verbose_option
@click.option(
    "--period",
    type=click.Choice(_REPORT_PERIODS),
    default="today",
    show_default=True,
    help="Report period",
)
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["markdown", "json"]),
    default="markdown",
    show_default=True,
    help="Output format",
)
@click.option("--data-dir", type=click.Path(path_type=Path), help="Usage ledger directory")
def report(config: Path | None, verbose: int, period: str, fmt: str, data_dir: Path | None) -> None:
    """Show spending for a period."""
    app_config = _load(config, verbose, data_dir=data_dir)
    pipeline = Pipeline.from_config(app_config)
    cost_report = pipeline.governor.report(period)  # type: ignore[arg-type]
    formatter = CostReportFormatter(cost_report, pipeline.conversations.stats())
    click.echo(formatter.to_json() if fmt == "json" else formatter.to_markdown())


@main.command()
@_config_option
@_verbose_option
@click.option("--daily", type=float, help="New daily limit (USD)")
@click.option("--task", "per_task", type=float, help="New per-task limit (USD)")
@click.option("--data-dir", type=click.Path(path_type=Path), help="Usage ledger directory")
def limits(
    config: Path | None,
    verbose: int,
    daily: float | None,
    per_task: float | None,
    data_dir: Path | None,
) -> None:
    """Show or update the persisted spending limits."""
    app_config = _load(config, verbose, data_dir=data_dir)
    pipeline = Pipeline.from_config(app_config)

    if daily is not None or per_task is not None:
        result = pipeline.set_cost_limits(daily=daily, per_task=per_task)
        if not result.ok:
            _print_result(result, as_json=False)
            sys.exit(EXIT_FAILED)
        current = result.data["limits"]
        click.echo("Limits updated")
    else:
        current = pipeline.governor.limits.to_dict()

    for label, key in (("Daily", "daily"), ("Per task", "per_task")):
        value = current.get(key)
        click.echo(f"  {label}: {'unlimited' if value is None else f'${value:.2f}'}")
    remaining = pipeline.governor.remaining_daily()
    if remaining is not None:
        click.echo(f"  Remaining today: ${remaining:.4f}")


@main.command()
@_config_option
@_verbose_option
@click.option("--model", help="Primary model (overrides config)")
def ping(config: Path | None, verbose: int, model: str | None) -> None:
    """Check that the configured model answers."""
    app_config = _load(config, verbose, model=model)
    result = Pipeline.from_config(app_config).check_connection()
    if result.ok:
        click.echo(f"OK: {result.model} is reachable")
        return
    click.echo(f"Failed: {result.reason}", err=True)
    sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
