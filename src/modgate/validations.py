"""Sequential shell validations (lint, build, ...) that gate acceptance of a change.

Commands never raise out of the runner: launch failures, non-zero exits and
timeouts all come back as a :class:`ValidationResult` so the caller always
receives one result per :class:`ValidationSpec`, in order.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import IO, Iterable

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 240_000
SMOKE_TIMEOUT_MS = 180_000
MIN_TIMEOUT_MS = 30_000
MAX_OUTPUT_BYTES = 80_000
TRUNCATION_MARKER = "\n\n... (truncated)"

_READ_CHUNK = 65_536
_READER_GRACE_SECONDS = 5.0


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ValidationSpec:
    name: str
    command: str
    cwd: str
    timeout_ms: int | None = None
    required: bool = True


@dataclass(frozen=True)
class ValidationResult:
    name: str
    command: str
    cwd: str
    started_at: int
    completed_at: int
    duration_ms: int
    exit_code: int | None
    status: ValidationStatus
    output: str
    required: bool

    @property
    def passed(self) -> bool:
        return self.status == ValidationStatus.PASSED


@dataclass(frozen=True)
class ValidationSummary:
    ok: bool
    required_failures: list[ValidationResult] = field(default_factory=list)
    results: list[ValidationResult] = field(default_factory=list)


@dataclass(frozen=True)
class _CommandOutcome:
    status: ValidationStatus
    exit_code: int | None
    output: str


class _OutputBuffer:
    """Bounded, append-only capture of combined stdout/stderr.

    Keeps the first ``cap`` bytes and drops the rest, remembering that it did.
    """

    def __init__(self, cap: int) -> None:
        self._cap = cap
        self._data = bytearray()
        self._lock = threading.Lock()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        with self._lock:
            if self.truncated:
                return
            room = self._cap - len(self._data)
            if len(chunk) > room:
                self._data.extend(chunk[:room])
                self.truncated = True
            else:
                self._data.extend(chunk)

    def text(self) -> str:
        with self._lock:
            return self._data.decode("utf-8", errors="replace")


def _render_output(prefix: str, buffer: _OutputBuffer, cap: int) -> str:
    body = prefix + buffer.text()
    truncated = buffer.truncated
    if len(body) > cap:
        body = body[:cap]
        truncated = True
    return body + TRUNCATION_MARKER if truncated else body


def _shell_invocation(command: str) -> list[str]:
    if os.name == "nt":
        return ["cmd.exe", "/c", command]
    return ["bash", "-lc", command]


def _pump(stream: IO[bytes], buffer: _OutputBuffer) -> None:
    try:
        for chunk in iter(partial(stream.read1, _READ_CHUNK), b""):  # type: ignore[attr-defined]
            buffer.append(chunk)
    except (OSError, ValueError):
        # Stream closed underneath us after a kill.
        pass
    finally:
        stream.close()


def _kill_process_tree(process: subprocess.Popen[bytes]) -> None:
    try:
        if os.name == "nt":
            process.kill()
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    try:
        process.wait(timeout=_READER_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", process.pid)


def _run_shell_command(command: str, cwd: str, timeout_ms: int, output_cap: int) -> _CommandOutcome:
    buffer = _OutputBuffer(output_cap)
    try:
        process = subprocess.Popen(
            _shell_invocation(command),
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=os.name != "nt",
        )
    except (OSError, ValueError) as exc:
        return _CommandOutcome(
            status=ValidationStatus.FAILED,
            exit_code=None,
            output=_render_output(f"Failed to execute command: {exc}\n\n", buffer, output_cap),
        )

    assert process.stdout is not None
    reader = threading.Thread(target=_pump, args=(process.stdout, buffer), daemon=True)
    reader.start()

    try:
        exit_code = process.wait(timeout=timeout_ms / 1000)
    except subprocess.TimeoutExpired:
        _kill_process_tree(process)
        reader.join(timeout=_READER_GRACE_SECONDS)
        return _CommandOutcome(
            status=ValidationStatus.TIMED_OUT,
            exit_code=None,
            output=_render_output(f"Command timed out after {timeout_ms}ms.\n\n", buffer, output_cap),
        )

    # Background children may keep the pipe open after the shell exits.
    reader.join(timeout=_READER_GRACE_SECONDS)
    if exit_code == 0:
        rendered = _render_output("", buffer, output_cap)
        return _CommandOutcome(
            status=ValidationStatus.PASSED,
            exit_code=0,
            output=rendered or "Command completed successfully (no output).",
        )
    return _CommandOutcome(
        status=ValidationStatus.FAILED,
        exit_code=exit_code,
        output=_render_output(f"Command exited with code {exit_code}.\n\n", buffer, output_cap),
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


class ValidationRunner:
    """Runs validation specs one at a time, in list order."""

    def __init__(self, *, min_timeout_ms: int = MIN_TIMEOUT_MS, output_cap: int = MAX_OUTPUT_BYTES) -> None:
        if min_timeout_ms < 1:
            raise ValueError(f"min_timeout_ms must be >= 1, got: {min_timeout_ms}")
        if output_cap < 1:
            raise ValueError(f"output_cap must be >= 1, got: {output_cap}")
        self.min_timeout_ms = min_timeout_ms
        self.output_cap = output_cap

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "ValidationRunner":
        return cls(
            min_timeout_ms=settings.validation_min_timeout_ms,
            output_cap=settings.validation_output_cap,
        )

    def effective_timeout_ms(self, spec: ValidationSpec) -> int:
        requested = spec.timeout_ms if spec.timeout_ms is not None else DEFAULT_TIMEOUT_MS
        return max(self.min_timeout_ms, int(requested))

    def run_one(self, spec: ValidationSpec) -> ValidationResult:
        timeout_ms = self.effective_timeout_ms(spec)
        logger.info("Running validation %s: %s (cwd=%s, timeout=%dms)", spec.name, spec.command, spec.cwd, timeout_ms)
        started_at = _now_ms()
        outcome = _run_shell_command(spec.command, spec.cwd, timeout_ms, self.output_cap)
        completed_at = _now_ms()
        if outcome.status != ValidationStatus.PASSED:
            logger.warning("Validation %s %s (exit_code=%s)", spec.name, outcome.status.value, outcome.exit_code)
        return ValidationResult(
            name=spec.name,
            command=spec.command,
            cwd=spec.cwd,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=completed_at - started_at,
            exit_code=outcome.exit_code,
            status=outcome.status,
            output=outcome.output,
            required=spec.required,
        )

    def run(self, specs: Iterable[ValidationSpec]) -> list[ValidationResult]:
        return [self.run_one(spec) for spec in specs]


def run_validations(
    specs: Iterable[ValidationSpec],
    *,
    min_timeout_ms: int = MIN_TIMEOUT_MS,
    output_cap: int = MAX_OUTPUT_BYTES,
) -> list[ValidationResult]:
    return ValidationRunner(min_timeout_ms=min_timeout_ms, output_cap=output_cap).run(specs)


def summarize_validation_results(results: list[ValidationResult]) -> ValidationSummary:
    """Optional specs never affect ``ok``."""
    required_failures = [result for result in results if result.required and not result.passed]
    return ValidationSummary(ok=not required_failures, required_failures=required_failures, results=list(results))


def default_validation_specs(cwd: str, settings: RuntimeSettings | None = None) -> list[ValidationSpec]:
    """Full gate: lint and build with generous timeouts."""
    effective = settings if settings is not None else RuntimeSettings()
    return [
        ValidationSpec(name="lint", command=effective.lint_command, cwd=cwd, timeout_ms=240_000, required=True),
        ValidationSpec(name="build", command=effective.build_command, cwd=cwd, timeout_ms=300_000, required=True),
    ]


def smoke_validation_specs(cwd: str, settings: RuntimeSettings | None = None) -> list[ValidationSpec]:
    """Quick gate: build only."""
    effective = settings if settings is not None else RuntimeSettings()
    return [
        ValidationSpec(
            name="smoke_build",
            command=effective.build_command,
            cwd=cwd,
            timeout_ms=SMOKE_TIMEOUT_MS,
            required=True,
        ),
    ]
