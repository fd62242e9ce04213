"""
Configuration Validation Module
===============================

Configuration validation at startup.

Features:
- Schema-based validation (type, range, allowed values)
- Cross-field validation
- Secret references: ${env:VARIABLE_NAME}
- Strict mode that raises instead of returning issues
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class ConfigValidationError(ValueError):
    """Raised when config validation fails in strict mode."""

    def __init__(self, message: str, result: ValidationResult):
        super().__init__(message)
        self.result = result


# =============================================================================
# SECRETS
# =============================================================================

ENV_PATTERN = re.compile(r"^\$\{env:([A-Za-z_][A-Za-z0-9_]*)\}$")


def resolve_secret(value: str, required: bool = False) -> str | None:
    """
    Resolve a ${env:NAME} reference; other strings come back unchanged.

    An unset variable resolves to None, or raises ValueError when required.
    """
    match = ENV_PATTERN.match(value)
    if not match:
        return value

    name = match.group(1)
    resolved = os.environ.get(name)
    if resolved is None:
        if required:
            raise ValueError(f"Environment variable '{name}' not set")
        logger.warning(f"Environment variable '{name}' not set; value left empty")
    return resolved


def resolve_secrets(config: dict, required: bool = False) -> dict:
    """Recursively resolve every ${env:NAME} string in a config dict."""
    resolved: dict[str, Any] = {}

    for key, value in config.items():
        if isinstance(value, dict):
            resolved[key] = resolve_secrets(value, required)
        elif isinstance(value, str):
            resolved[key] = resolve_secret(value, required)
        elif isinstance(value, list):
            resolved[key] = [
                resolve_secrets(item, required) if isinstance(item, dict)
                else resolve_secret(item, required) if isinstance(item, str)
                else item
                for item in value
            ]
        else:
            resolved[key] = value

    return resolved


def _get_nested_value(config: dict, path: str) -> Any:
    """Get value from nested dict using dot notation."""
    value: Any = config
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
        if value is None:
            return None
    return value


# =============================================================================
# VALIDATION RESULT
# =============================================================================

class ValidationSeverity(str, Enum):
    """Validation issue severity."""
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    """Single validation issue."""
    severity: ValidationSeverity
    path: str  # e.g. "scanner.min_correlation"
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.value.upper()}] {self.path}: {self.message}"


@dataclass
class ValidationResult:
    """Complete validation result."""
    valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_error(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.ERROR, path, message))
        self.valid = False

    def add_warning(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.WARNING, path, message))

    def get_errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def summary(self) -> str:
        status = "VALID" if self.valid else "INVALID"
        return (
            f"Config validation: {status} "
            f"({len(self.get_errors())} errors, {len(self.get_warnings())} warnings)"
        )


@dataclass
class FieldSchema:
    """Schema for a single config field. Missing optional fields use the component default."""
    path: str
    field_type: type | tuple[type, ...]
    required: bool = False
    min_value: float | None = None
    max_value: float | None = None
    allowed_values: list | None = None
    validator: Callable[[Any], bool] | None = None
    description: str = ""


NUMBER = (int, float)


class ConfigValidator:
    """
    Configuration validator with schema support.

    Validates config.yaml at startup so bad thresholds fail before the
    first cycle instead of during it.
    """

    def __init__(self):
        self._schemas: list[FieldSchema] = []
        self._cross_validators: list[Callable[[dict, ValidationResult], None]] = []
        self._register_default_schemas()

    def _register_default_schemas(self) -> None:
        schemas = [
            # Engine
            FieldSchema("engine.rolling_window", int, min_value=5, max_value=365,
                        description="Z-score rolling window (bars)"),
            FieldSchema("engine.min_observations", int, min_value=20),
            FieldSchema("engine.entry_ladder", list, validator=_is_ascending_positive,
                        description="Candidate entry thresholds, ascending"),
            FieldSchema("engine.min_entry_threshold", NUMBER, min_value=1.0, max_value=5.0),
            FieldSchema("engine.exit_threshold", NUMBER, min_value=0.0, max_value=2.0),
            FieldSchema("engine.reverted_band", NUMBER, min_value=0.0, max_value=2.0),

            # Scanner
            FieldSchema("scanner.min_volume_24h", NUMBER, min_value=0),
            FieldSchema("scanner.min_open_interest", NUMBER, min_value=0),
            FieldSchema("scanner.min_correlation", NUMBER, min_value=-1.0, max_value=1.0),
            FieldSchema("scanner.max_half_life_days", NUMBER, min_value=1),
            FieldSchema("scanner.lookback_days", int, min_value=20, max_value=365),
            FieldSchema("scanner.top_per_sector", int, min_value=1),
            FieldSchema("scanner.cross_sector", bool),
            FieldSchema("scanner.cross_sector_top_k", int, min_value=1),
            FieldSchema("scanner.fetch_batch_size", int, min_value=1, max_value=50),
            FieldSchema("scanner.fetch_batch_delay_seconds", NUMBER, min_value=0),
            FieldSchema("scanner.sectors", dict),

            # Monitor
            FieldSchema("monitor.max_concurrent_trades", int, min_value=1, max_value=50),
            FieldSchema("monitor.block_asset_overlap", bool),
            FieldSchema("monitor.min_correlation", NUMBER, min_value=-1.0, max_value=1.0),
            FieldSchema("monitor.max_entry_half_life", NUMBER, min_value=1),
            FieldSchema("monitor.windows.reactive", int, min_value=10),
            FieldSchema("monitor.windows.cointegration", int, min_value=20),
            FieldSchema("monitor.windows.short", int, min_value=3),
            FieldSchema("monitor.windows.hurst", int, min_value=40),
            FieldSchema("monitor.approaching_ratio", NUMBER, min_value=0.0, max_value=1.0),

            # Exits
            FieldSchema("monitor.exits.breakdown_correlation", NUMBER, min_value=-1.0, max_value=1.0),
            FieldSchema("monitor.exits.partial_take_profit.fraction", NUMBER, min_value=0.0, max_value=1.0),
            FieldSchema("monitor.exits.stop_loss.floor", NUMBER, min_value=0.0),
            FieldSchema("monitor.exits.time_stop.half_life_multiple", NUMBER, min_value=0.5),

            # Regime
            FieldSchema("regime.trending_threshold", NUMBER, min_value=0.0, max_value=1.0),
            FieldSchema("regime.min_observations", int, min_value=10),

            # Data source
            FieldSchema("data_source.base_url", str, validator=lambda v: v.startswith("http")),
            FieldSchema("data_source.timeout_seconds", NUMBER, min_value=1),
            FieldSchema("data_source.retry.max_attempts", int, min_value=1, max_value=10),
            FieldSchema("data_source.retry.base_delay_seconds", NUMBER, min_value=0),
            FieldSchema("data_source.retry.jitter_fraction", NUMBER, min_value=0.0, max_value=1.0),

            # Persistence
            FieldSchema("persistence.state_dir", str),
            FieldSchema("persistence.max_backups", int, min_value=0),

            # Notifications
            FieldSchema("notifications.telegram.enabled", bool),

            # Logging
            FieldSchema("logging.level", str, allowed_values=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),

            # Scheduler
            FieldSchema("scheduler.monitor_interval_minutes", NUMBER, min_value=1),
            FieldSchema("scheduler.scan_interval_hours", NUMBER, min_value=0.25),
        ]
        for schema in schemas:
            self.add_schema(schema)

        self.add_cross_validator(_validate_thresholds)
        self.add_cross_validator(_validate_windows)
        self.add_cross_validator(_validate_telegram)

    def add_schema(self, schema: FieldSchema) -> None:
        self._schemas.append(schema)

    def add_cross_validator(self, validator: Callable[[dict, ValidationResult], None]) -> None:
        self._cross_validators.append(validator)

    def validate(self, config: dict, strict: bool = False) -> ValidationResult:
        """
        Validate configuration against schemas.

        Args:
            config: Configuration dictionary
            strict: Raise ConfigValidationError on any error

        Returns:
            ValidationResult with all issues found
        """
        result = ValidationResult()

        for schema in self._schemas:
            self._validate_field(config, schema, result)

        for validator in self._cross_validators:
            validator(config, result)

        if result.valid:
            logger.info(result.summary())
        else:
            logger.error(result.summary())
            for issue in result.get_errors():
                logger.error(str(issue))
        for issue in result.get_warnings():
            logger.warning(str(issue))

        if strict and not result.valid:
            details = "\n".join(f"  {issue}" for issue in result.get_errors())
            raise ConfigValidationError(f"Configuration validation failed:\n{details}", result)

        return result

    def _validate_field(self, config: dict, schema: FieldSchema, result: ValidationResult) -> None:
        value = _get_nested_value(config, schema.path)

        if value is None:
            if schema.required:
                result.add_error(schema.path, "Required field is missing")
            return

        # bool is an int subclass; only accept it where bool is asked for
        bool_mismatch = isinstance(value, bool) and schema.field_type is not bool
        if bool_mismatch or not isinstance(value, schema.field_type):
            expected = (
                schema.field_type.__name__
                if isinstance(schema.field_type, type)
                else "/".join(t.__name__ for t in schema.field_type)
            )
            result.add_error(schema.path, f"Invalid type: expected {expected}, got {type(value).__name__}")
            return

        if isinstance(value, NUMBER):
            if schema.min_value is not None and value < schema.min_value:
                result.add_error(schema.path, f"Value {value} is below minimum {schema.min_value}")
            if schema.max_value is not None and value > schema.max_value:
                result.add_error(schema.path, f"Value {value} is above maximum {schema.max_value}")

        if schema.allowed_values is not None and value not in schema.allowed_values:
            result.add_error(schema.path, f"Value '{value}' not in allowed values: {schema.allowed_values}")

        if schema.validator is not None and not schema.validator(value):
            result.add_error(schema.path, "Failed custom validation")


def _is_ascending_positive(values: list) -> bool:
    if not values or not all(isinstance(v, NUMBER) and not isinstance(v, bool) for v in values):
        return False
    return all(v > 0 for v in values) and list(values) == sorted(values)


def _validate_thresholds(config: dict, result: ValidationResult) -> None:
    engine = config.get("engine", {}) or {}
    exit_threshold = engine.get("exit_threshold")
    floor = engine.get("min_entry_threshold")
    ladder = engine.get("entry_ladder")

    if isinstance(exit_threshold, NUMBER) and isinstance(floor, NUMBER) and exit_threshold >= floor:
        result.add_error(
            "engine.exit_threshold",
            f"Exit threshold {exit_threshold} must be below min entry threshold {floor}",
        )
    if isinstance(ladder, list) and isinstance(floor, NUMBER) and ladder:
        if all(isinstance(v, NUMBER) for v in ladder) and max(ladder) < floor:
            result.add_warning(
                "engine.entry_ladder",
                f"Every ladder step is below the floor {floor}; the floor will always apply",
            )


def _validate_windows(config: dict, result: ValidationResult) -> None:
    windows = _get_nested_value(config, "monitor.windows") or {}
    short = windows.get("short")
    reactive = windows.get("reactive")
    structural = windows.get("cointegration")

    if isinstance(short, int) and isinstance(reactive, int) and short >= reactive:
        result.add_error("monitor.windows.short", "Short window must be shorter than the reactive window")
    if isinstance(reactive, int) and isinstance(structural, int) and reactive > structural:
        result.add_warning(
            "monitor.windows.cointegration",
            "Cointegration window is shorter than the reactive window",
        )


def _validate_telegram(config: dict, result: ValidationResult) -> None:
    telegram = _get_nested_value(config, "notifications.telegram") or {}
    if not telegram.get("enabled"):
        return

    token = telegram.get("bot_token")
    if not token:
        result.add_error("notifications.telegram.bot_token", "Telegram enabled but no bot token")
    elif not ENV_PATTERN.match(str(token)):
        result.add_warning(
            "notifications.telegram.bot_token",
            "Secret stored as plaintext; use ${env:TELEGRAM_BOT_TOKEN}",
        )
    if not telegram.get("chat_id"):
        result.add_error("notifications.telegram.chat_id", "Telegram enabled but no chat id")


def validate_config_at_startup(config: dict, strict: bool = True) -> dict:
    """
    Validate raw config, then resolve ${env:...} references.

    Returns:
        Config with secrets resolved

    Raises:
        ConfigValidationError: strict and validation failed
    """
    ConfigValidator().validate(config, strict=strict)
    return resolve_secrets(config)
