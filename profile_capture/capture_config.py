from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator, model_validator

from profile_capture.schemas import CaptureBaseModel, FrozenCaptureModel

DEFAULT_CAPTURE_ROOT = ".build/profile-capture"
DEFAULT_OUTPUT_ROOT = f"{DEFAULT_CAPTURE_ROOT}/exports"
DEFAULT_METADATA_STORE_PATH = f"{DEFAULT_CAPTURE_ROOT}/metadata-store.json"
DEFAULT_RETENTION_DAYS = 14
DEFAULT_MAX_TRACKED_CAPTURES = 100
DEFAULT_PLACEHOLDER_NAME = "Unknown"
MAX_PAUSE_MS = 10_000


class CaptureConfigError(ValueError):
    """Raised when a capture config file cannot be loaded."""


def _validate_relative_path(value: str) -> str:
    path = value.strip()
    if not path:
        raise ValueError("path must be non-empty")
    if path.startswith("/"):
        raise ValueError("path must be relative")
    if ".." in path.split("/"):
        raise ValueError("path cannot contain '..'")
    return path


def _parse_bool(raw: str, *, env_var: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{env_var} must be a boolean value")


def _parse_int(raw: str, *, env_var: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{env_var} must be an integer") from exc


class PauseSettings(FrozenCaptureModel):
    enabled: bool = True
    min_ms: int = 150
    max_ms: int = 600

    @field_validator("min_ms", "max_ms")
    @classmethod
    def validate_bounds(cls, value: int) -> int:
        if not 0 <= value <= MAX_PAUSE_MS:
            raise ValueError(f"must be between 0 and {MAX_PAUSE_MS}")
        return value

    @model_validator(mode="after")
    def validate_range(self) -> "PauseSettings":
        if self.max_ms < self.min_ms:
            raise ValueError("max_ms must be >= min_ms")
        return self


class RevealSettings(CaptureBaseModel):
    poll_interval_ms: int = 100
    max_poll_attempts: int = 20
    render_settle_ms: int = 300
    dismiss_settle_ms: int = 300
    click_timeout_ms: int = 2_000

    @field_validator("poll_interval_ms", "max_poll_attempts", "click_timeout_ms")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("render_settle_ms", "dismiss_settle_ms")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @property
    def poll_budget_ms(self) -> int:
        return self.poll_interval_ms * self.max_poll_attempts


class CaptureConfig(CaptureBaseModel):
    output_root: str = DEFAULT_OUTPUT_ROOT
    metadata_store_path: str = DEFAULT_METADATA_STORE_PATH
    session_state_path: str | None = None
    retention_days: int = DEFAULT_RETENTION_DAYS
    max_tracked_captures: int = DEFAULT_MAX_TRACKED_CAPTURES
    headless_default: bool = True
    display_name_max_length: int = 50
    placeholder_name: str = DEFAULT_PLACEHOLDER_NAME
    log_level: str = "INFO"
    reveal: RevealSettings = Field(default_factory=RevealSettings)
    pauses: PauseSettings = Field(default_factory=PauseSettings)

    @field_validator("output_root", "metadata_store_path")
    @classmethod
    def validate_paths(cls, value: str) -> str:
        return _validate_relative_path(value)

    @field_validator("session_state_path")
    @classmethod
    def validate_session_state_path(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("retention_days", "max_tracked_captures", "display_name_max_length")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("placeholder_name")
    @classmethod
    def validate_placeholder_name(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("placeholder_name must be non-empty")
        return text

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("log_level must be a standard logging level name")
        return level

    @model_validator(mode="after")
    def validate_distinct_locations(self) -> "CaptureConfig":
        store = self.metadata_store_path.rstrip("/")
        output = self.output_root.rstrip("/")
        if store == output or store.startswith(f"{output}/"):
            raise ValueError("metadata_store_path must live outside output_root")
        return self


_ENV_FIELDS: dict[str, str] = {
    "PROFILE_CAPTURE_OUTPUT_ROOT": "output_root",
    "PROFILE_CAPTURE_METADATA_STORE_PATH": "metadata_store_path",
    "PROFILE_CAPTURE_SESSION_STATE_PATH": "session_state_path",
    "PROFILE_CAPTURE_PLACEHOLDER_NAME": "placeholder_name",
    "PROFILE_CAPTURE_LOG_LEVEL": "log_level",
}
_ENV_INT_FIELDS: dict[str, str] = {
    "PROFILE_CAPTURE_RETENTION_DAYS": "retention_days",
    "PROFILE_CAPTURE_MAX_TRACKED_CAPTURES": "max_tracked_captures",
    "PROFILE_CAPTURE_DISPLAY_NAME_MAX_LENGTH": "display_name_max_length",
}
_ENV_REVEAL_FIELDS: dict[str, str] = {
    "PROFILE_CAPTURE_REVEAL_POLL_INTERVAL_MS": "poll_interval_ms",
    "PROFILE_CAPTURE_REVEAL_MAX_POLL_ATTEMPTS": "max_poll_attempts",
    "PROFILE_CAPTURE_REVEAL_RENDER_SETTLE_MS": "render_settle_ms",
    "PROFILE_CAPTURE_REVEAL_DISMISS_SETTLE_MS": "dismiss_settle_ms",
    "PROFILE_CAPTURE_REVEAL_CLICK_TIMEOUT_MS": "click_timeout_ms",
}
_ENV_PAUSE_FIELDS: dict[str, str] = {
    "PROFILE_CAPTURE_PAUSE_MIN_MS": "min_ms",
    "PROFILE_CAPTURE_PAUSE_MAX_MS": "max_ms",
}


def load_capture_config_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    base_config: CaptureConfig | None = None,
) -> CaptureConfig:
    env = dict(os.environ if environ is None else environ)
    config = base_config or CaptureConfig()
    payload = config.model_dump(mode="python")

    for env_var, field_name in _ENV_FIELDS.items():
        if env_var in env:
            payload[field_name] = env[env_var]
    for env_var, field_name in _ENV_INT_FIELDS.items():
        if env_var in env:
            payload[field_name] = _parse_int(env[env_var], env_var=env_var)
    for env_var, field_name in _ENV_REVEAL_FIELDS.items():
        if env_var in env:
            payload["reveal"][field_name] = _parse_int(env[env_var], env_var=env_var)
    for env_var, field_name in _ENV_PAUSE_FIELDS.items():
        if env_var in env:
            payload["pauses"][field_name] = _parse_int(env[env_var], env_var=env_var)
    if "PROFILE_CAPTURE_PAUSES" in env:
        payload["pauses"]["enabled"] = _parse_bool(env["PROFILE_CAPTURE_PAUSES"], env_var="PROFILE_CAPTURE_PAUSES")
    if "PROFILE_CAPTURE_HEADLESS_DEFAULT" in env:
        payload["headless_default"] = _parse_bool(
            env["PROFILE_CAPTURE_HEADLESS_DEFAULT"],
            env_var="PROFILE_CAPTURE_HEADLESS_DEFAULT",
        )

    return CaptureConfig.model_validate(payload)


def load_capture_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> CaptureConfig:
    """Load the YAML config file at ``path`` (if any), then apply env overrides."""
    base_config = None
    if path is not None:
        base_config = CaptureConfig.model_validate(_read_yaml_mapping(path))
    return load_capture_config_from_env(environ, base_config=base_config)


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise CaptureConfigError(f"unable to parse YAML from '{path}': {exc}") from exc
    except OSError as exc:
        raise CaptureConfigError(f"unable to read '{path}': {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise CaptureConfigError(f"capture config at '{path}' must be a mapping")
    return parsed
