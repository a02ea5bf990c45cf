"""Configuration loading and validation for the conversation sync engine."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "threadsync"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _require_text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class UserConfig(BaseModel):
    """Identity of the local participant."""

    id: str = "user-1"
    name: str = "You"
    avatar: str = ""

    @field_validator("id", "name", mode="before")
    @classmethod
    def _validate_non_empty_string(cls, value: Any) -> str:
        return _require_text(value)


class BackendConfig(BaseModel):
    """REST backend endpoint settings."""

    base_url: str = "http://localhost:3001/api"
    timeout_seconds: float = Field(default=15.0, gt=0, le=600)
    upload_folder: str = "chat"

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        normalized = _require_text(value).rstrip("/")
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("backend.base_url must use http or https scheme.")
        if not parsed.hostname:
            raise ValueError("backend.base_url must include a hostname.")
        return normalized


class PollingConfig(BaseModel):
    """Fixed-interval poll scheduling; there is no push transport."""

    interval_seconds: float = Field(default=2.0, gt=0, le=3600)
    jitter_seconds: float = Field(default=0.0, ge=0, le=60)
    backoff_factor: float = Field(default=2.0, ge=1.0, le=10.0)
    max_interval_seconds: float = Field(default=30.0, gt=0, le=3600)

    @model_validator(mode="after")
    def _max_not_below_interval(self) -> PollingConfig:
        if self.max_interval_seconds < self.interval_seconds:
            self.max_interval_seconds = self.interval_seconds
        return self


class ReconcileConfig(BaseModel):
    """Optimistic-message matching and simulated status timings."""

    tolerance_seconds: float = Field(default=10.0, gt=0, le=600)
    max_unmatched_ticks: int = Field(default=5, ge=1, le=1000)
    delivered_delay_seconds: float = Field(default=0.5, ge=0, le=60)
    read_delay_seconds: float = Field(default=1.5, ge=0, le=600)

    @model_validator(mode="after")
    def _read_after_delivered(self) -> ReconcileConfig:
        if self.read_delay_seconds < self.delivered_delay_seconds:
            raise ValueError(
                "read_delay_seconds must not be shorter than delivered_delay_seconds."
            )
        return self


class TypingConfig(BaseModel):
    window_seconds: float = Field(default=3.0, gt=0, le=120)


class NotificationsConfig(BaseModel):
    enabled: bool = True
    preview_chars: int = Field(default=100, ge=1, le=10_000)


class RecordingConfig(BaseModel):
    """Voice capture settings."""

    tick_seconds: float = Field(default=1.0, gt=0, le=60)
    mime_type: str = "audio/webm"
    max_seconds: int = Field(default=600, ge=1, le=86_400)

    @field_validator("mime_type", mode="before")
    @classmethod
    def _validate_mime(cls, value: Any) -> str:
        normalized = _require_text(value).lower()
        if not normalized.startswith("audio/"):
            raise ValueError("recording.mime_type must be an audio/* type.")
        return normalized


class UploadsConfig(BaseModel):
    max_bytes: int = Field(default=50 * 1024 * 1024, ge=1, le=2 * 1024**3)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/threadsync/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _require_text(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    user: UserConfig = UserConfig()
    backend: BackendConfig = BackendConfig()
    polling: PollingConfig = PollingConfig()
    reconcile: ReconcileConfig = ReconcileConfig()
    typing: TypingConfig = TypingConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    recording: RecordingConfig = RecordingConfig()
    uploads: UploadsConfig = UploadsConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump(by_alias=True)


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump(by_alias=True)
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "reason": str(exc)},
        )
        return deepcopy(DEFAULT_CONFIG)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (tomllib.TOMLDecodeError, OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _validate_config(merged)
