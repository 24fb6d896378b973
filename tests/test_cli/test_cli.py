"""
Tests para la CLI (click).

Cubre:
- limits (mostrar y actualizar, persistencia)
- report (markdown y json)
- consult (códigos de salida por estado, adjuntos)
- ping
- Error de configuración (exit 3)
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from costgate.cli import (
    EXIT_BLOCKED,
    EXIT_CONFIG_ERROR,
    EXIT_FAILED,
    EXIT_NEEDS_CONFIRMATION,
    main,
)
from costgate.core import PipelineResult

_ENV_VARS = ("DAILY_COST_LIMIT", "TASK_COST_LIMIT", "DATA_DIR", "LOG_LEVEL", "COSTGATE_LOG_FILE")


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def fake_pipeline(result: PipelineResult) -> MagicMock:
    pipeline = MagicMock()
    pipeline.consult.return_value = result
    pipeline.check_connection.return_value = result
    return pipeline


# ── Tests: limits / report ────────────────────────────────────────────────


class TestLimitsCommand:
    """Tests para el comando limits."""

    def test_show_defaults(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(main, ["limits", "--data-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "Daily: $10.00" in result.output
        assert "Per task: $5.00" in result.output

    def test_update_is_persisted(self, runner: CliRunner, tmp_path: Path) -> None:
        updated = runner.invoke(main, ["limits", "--daily", "25", "--data-dir", str(tmp_path)])
        assert updated.exit_code == 0
        assert "Limits updated" in updated.output

        shown = runner.invoke(main, ["limits", "--data-dir", str(tmp_path)])
        assert "Daily: $25.00" in shown.output


class TestReportCommand:
    """Tests para el comando report."""

    def test_markdown(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(main, ["report", "--data-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "# Cost Report" in result.output
        assert "| Period | Today |" in result.output

    def test_json(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(main, ["report", "--period", "week", "--format", "json", "--data-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert '"period": "Past Week"' in result.output
        assert '"total_conversations": 0' in result.output


# ── Tests: consult ────────────────────────────────────────────────────────


class TestConsultCommand:
    """Tests para el comando consult con un pipeline simulado."""

    def test_ok(self, runner: CliRunner, tmp_path: Path) -> None:
        outcome = PipelineResult(
            status="ok",
            task_id="task_1",
            text="four",
            usage={"tokens": 10, "cost": 0.001, "breakdown": {"input": 5, "output": 5, "reasoning": None}},
        )
        with patch("costgate.cli.Pipeline.from_config", return_value=fake_pipeline(outcome)):
            result = runner.invoke(main, ["consult", "2+2?", "--data-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "four" in result.output

    @pytest.mark.parametrize(
        "status,code",
        [("needs_confirmation", EXIT_NEEDS_CONFIRMATION), ("blocked", EXIT_BLOCKED), ("error", EXIT_FAILED)],
    )
    def test_exit_codes(self, runner: CliRunner, tmp_path: Path, status: str, code: int) -> None:
        outcome = PipelineResult(status=status, task_id="task_1", reason="nope")  # type: ignore[arg-type]
        with patch("costgate.cli.Pipeline.from_config", return_value=fake_pipeline(outcome)):
            result = runner.invoke(main, ["consult", "hi", "--data-dir", str(tmp_path)])
        assert result.exit_code == code

    def test_request_built_from_options(self, runner: CliRunner, tmp_path: Path) -> None:
        attachment = tmp_path / "notes.txt"
        attachment.write_text("remember this", encoding="utf-8")
        pipeline = fake_pipeline(PipelineResult(status="ok", text="done"))

        with patch("costgate.cli.Pipeline.from_config", return_value=pipeline):
            runner.invoke(
                main,
                [
                    "consult", "summarize",
                    "--effort", "low",
                    "--confirm",
                    "--task-budget", "0.5",
                    "--resource", str(attachment),
                    "--data-dir", str(tmp_path),
                ],
            )

        request = pipeline.consult.call_args.args[0]
        assert request.prompt == "summarize"
        assert request.reasoning_effort == "low"
        assert request.confirm_spending is True
        assert request.task_budget == 0.5
        assert request.resources == {"resources": [{"name": "notes.txt", "text": "remember this"}]}
        pipeline.flush.assert_called_once()

    def test_json_output(self, runner: CliRunner, tmp_path: Path) -> None:
        outcome = PipelineResult(status="needs_confirmation", task_id="task_9", reason="Daily budget nearly exhausted")
        with patch("costgate.cli.Pipeline.from_config", return_value=fake_pipeline(outcome)):
            result = runner.invoke(main, ["consult", "hi", "--json", "--data-dir", str(tmp_path)])
        assert '"status": "needs_confirmation"' in result.output
        assert '"task_id": "task_9"' in result.output


# ── Tests: ping / config errors ───────────────────────────────────────────


class TestMisc:
    """Tests para ping y errores de configuración."""

    def test_ping_ok(self, runner: CliRunner) -> None:
        outcome = PipelineResult(status="ok", model="gpt-5", data={"connected": True})
        with patch("costgate.cli.Pipeline.from_config", return_value=fake_pipeline(outcome)):
            result = runner.invoke(main, ["ping"])
        assert result.exit_code == 0
        assert "OK: gpt-5 is reachable" in result.output

    def test_ping_failure(self, runner: CliRunner) -> None:
        outcome = PipelineResult(status="error", reason="Model connection test failed")
        with patch("costgate.cli.Pipeline.from_config", return_value=fake_pipeline(outcome)):
            result = runner.invoke(main, ["ping"])
        assert result.exit_code == EXIT_FAILED

    def test_invalid_config_file(self, runner: CliRunner, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("costs:\n  daily_limit_usd: -5\n", encoding="utf-8")
        result = runner.invoke(main, ["limits", "-c", str(bad), "--data-dir", str(tmp_path)])
        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "Configuration error" in result.output
