from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    project_root: str = ""
    home_root: str = ""
    state_root: str = ""
    validation_min_timeout_ms: int = 30_000
    validation_output_cap: int = 80_000
    lint_command: str = "npm run lint"
    build_command: str = "npm run build"
    keyring_service: str = "modgate"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            project_root=os.getenv("MODGATE_PROJECT_ROOT", ""),
            home_root=os.getenv("MODGATE_HOME", ""),
            state_root=os.getenv("MODGATE_STATE_ROOT", ""),
            validation_min_timeout_ms=_get_env_int("MODGATE_VALIDATION_MIN_TIMEOUT_MS", default=30_000, minimum=1),
            validation_output_cap=_get_env_int("MODGATE_VALIDATION_OUTPUT_CAP", default=80_000, minimum=1_024),
            lint_command=os.getenv("MODGATE_LINT_COMMAND", "npm run lint"),
            build_command=os.getenv("MODGATE_BUILD_COMMAND", "npm run build"),
            keyring_service=os.getenv("MODGATE_KEYRING_SERVICE", "modgate"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        lint_command = self.lint_command.strip()
        if not lint_command:
            raise ValueError("MODGATE_LINT_COMMAND must be non-empty")
        build_command = self.build_command.strip()
        if not build_command:
            raise ValueError("MODGATE_BUILD_COMMAND must be non-empty")
        keyring_service = self.keyring_service.strip()
        if not keyring_service:
            raise ValueError("MODGATE_KEYRING_SERVICE must be non-empty")
        if self.validation_min_timeout_ms < 1:
            raise ValueError(
                f"MODGATE_VALIDATION_MIN_TIMEOUT_MS must be >= 1, got: {self.validation_min_timeout_ms}"
            )
        if self.validation_output_cap < 1_024:
            raise ValueError(
                f"MODGATE_VALIDATION_OUTPUT_CAP must be >= 1024, got: {self.validation_output_cap}"
            )
        return RuntimeSettings(
            project_root=self.project_root.strip(),
            home_root=self.home_root.strip(),
            state_root=self.state_root.strip(),
            validation_min_timeout_ms=self.validation_min_timeout_ms,
            validation_output_cap=self.validation_output_cap,
            lint_command=lint_command,
            build_command=build_command,
            keyring_service=keyring_service,
        )

    @property
    def project_root_path(self) -> Path:
        """Return the project root as a Path, defaulting to cwd if unset."""
        return Path(self.project_root) if self.project_root else Path.cwd()

    @property
    def home_root_path(self) -> Path:
        """Return the modgate home directory, defaulting to ``~/.modgate``."""
        return Path(self.home_root).expanduser() if self.home_root else Path.home() / ".modgate"

    @property
    def state_root_path(self) -> Path:
        path = Path(self.state_root) if self.state_root else Path("state")
        return path if path.is_absolute() else self.home_root_path / path

    def signing_key_path(self) -> Path:
        return self.state_root_path / "signing" / "device-key.json"

    def device_record_path(self) -> Path:
        return self.state_root_path / "device.json"


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
