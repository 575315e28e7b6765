from __future__ import annotations

from pathlib import Path

import pytest

from modgate.settings import RuntimeSettings
from modgate.validations import (
    TRUNCATION_MARKER,
    ValidationRunner,
    ValidationSpec,
    ValidationStatus,
    default_validation_specs,
    run_validations,
    smoke_validation_specs,
    summarize_validation_results,
)


def _runner(**kwargs: int) -> ValidationRunner:
    return ValidationRunner(min_timeout_ms=kwargs.get("min_timeout_ms", 100), output_cap=kwargs.get("output_cap", 80_000))


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Commands run under a login shell, so keep the user's profile out of captured output."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


def test_successful_command_captures_output(tmp_path: Path) -> None:
    result = _runner().run_one(ValidationSpec(name="echo", command="echo hello", cwd=str(tmp_path), timeout_ms=10_000))
    assert result.status == ValidationStatus.PASSED
    assert result.exit_code == 0
    assert "hello" in result.output
    assert result.duration_ms == result.completed_at - result.started_at


def test_silent_success_reports_placeholder(tmp_path: Path) -> None:
    result = _runner().run_one(ValidationSpec(name="true", command="exit 0", cwd=str(tmp_path), timeout_ms=10_000))
    assert result.passed
    assert result.output == "Command completed successfully (no output)."


def test_non_zero_exit_is_failure(tmp_path: Path) -> None:
    result = _runner().run_one(
        ValidationSpec(name="lint", command="echo broken >&2; exit 3", cwd=str(tmp_path), timeout_ms=10_000)
    )
    assert result.status == ValidationStatus.FAILED
    assert result.exit_code == 3
    assert result.output.startswith("Command exited with code 3.\n\n")
    assert "broken" in result.output


def test_timeout_kills_command(tmp_path: Path) -> None:
    result = _runner().run_one(ValidationSpec(name="slow", command="sleep 5", cwd=str(tmp_path), timeout_ms=200))
    assert result.status == ValidationStatus.TIMED_OUT
    assert result.exit_code is None
    assert result.output.startswith("Command timed out after 200ms.")
    assert result.duration_ms < 5_000


def test_timeout_floor_applies(tmp_path: Path) -> None:
    runner = _runner(min_timeout_ms=30_000)
    spec = ValidationSpec(name="quick", command="exit 0", cwd=str(tmp_path), timeout_ms=10)
    assert runner.effective_timeout_ms(spec) == 30_000
    assert runner.effective_timeout_ms(ValidationSpec(name="d", command="x", cwd=str(tmp_path))) == 240_000


def test_output_is_truncated_with_marker(tmp_path: Path) -> None:
    result = _runner(output_cap=1_024).run_one(
        ValidationSpec(name="noisy", command="head -c 5000 /dev/zero | tr '\\0' x", cwd=str(tmp_path), timeout_ms=10_000)
    )
    assert result.passed
    assert result.output.endswith(TRUNCATION_MARKER)
    assert len(result.output) == 1_024 + len(TRUNCATION_MARKER)


def test_launch_failure_is_reported_as_failure(tmp_path: Path) -> None:
    result = _runner().run_one(
        ValidationSpec(name="missing", command="exit 0", cwd=str(tmp_path / "does-not-exist"), timeout_ms=10_000)
    )
    assert result.status == ValidationStatus.FAILED
    assert result.exit_code is None
    assert result.output.startswith("Failed to execute command:")


def test_runs_in_order_and_optional_failures_do_not_fail_summary(tmp_path: Path) -> None:
    results = run_validations(
        [
            ValidationSpec(name="first", command="exit 0", cwd=str(tmp_path), timeout_ms=10_000),
            ValidationSpec(name="optional", command="exit 1", cwd=str(tmp_path), timeout_ms=10_000, required=False),
        ],
        min_timeout_ms=100,
    )
    assert [result.name for result in results] == ["first", "optional"]
    summary = summarize_validation_results(results)
    assert summary.ok is True
    assert summary.required_failures == []
    assert len(summary.results) == 2


def test_required_failure_fails_summary(tmp_path: Path) -> None:
    results = run_validations(
        [ValidationSpec(name="build", command="exit 2", cwd=str(tmp_path), timeout_ms=10_000)],
        min_timeout_ms=100,
    )
    summary = summarize_validation_results(results)
    assert summary.ok is False
    assert [item.name for item in summary.required_failures] == ["build"]


def test_default_and_smoke_specs_use_configured_commands(tmp_path: Path) -> None:
    settings = RuntimeSettings(lint_command="ruff check .", build_command="make")
    full = default_validation_specs(str(tmp_path), settings)
    assert [(spec.name, spec.command) for spec in full] == [("lint", "ruff check ."), ("build", "make")]
    smoke = smoke_validation_specs(str(tmp_path), settings)
    assert [(spec.name, spec.command, spec.timeout_ms) for spec in smoke] == [("smoke_build", "make", 180_000)]


def test_runner_rejects_invalid_limits() -> None:
    with pytest.raises(ValueError):
        ValidationRunner(min_timeout_ms=0)
