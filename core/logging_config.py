"""
Logging Configuration Module
============================

Centralized logging for the pair engine.

Features:
- One format across scanner, monitor and CLI
- Module-specific log level overrides
- Optional log file next to the console handler
- Performance logging for slow cycles
- Pair/cycle context prefixed to messages
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class LogLevel(str, Enum):
    """Standard log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


MODULE_LOG_LEVELS = {
    # Statistics layer
    "core.series_stats": logging.INFO,
    "core.cointegration": logging.INFO,
    "core.divergence_profiler": logging.INFO,
    "core.regime_detector": logging.INFO,

    # Trade lifecycle
    "core.trade_state_machine": logging.INFO,
    "core.exit_rules": logging.INFO,
    "core.pair_screener": logging.INFO,
    "strategies.pair_fitness_strategy": logging.INFO,

    # Agents
    "agents.scanner_agent": logging.INFO,
    "agents.monitor_agent": logging.INFO,

    # Data feed retries are noisy
    "data.market_data": logging.WARNING,
    "core.retry": logging.WARNING,
}


@dataclass
class LoggingConfig:
    """
    Centralized logging configuration.

    Provides consistent verbosity across the engine.
    """
    root_level: int = logging.INFO
    format_string: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    module_levels: dict[str, int] = field(default_factory=lambda: MODULE_LOG_LEVELS.copy())
    log_file: str | None = None

    # Cycles slower than this are logged as warnings
    slow_operation_threshold_ms: float = 30_000.0

    def apply(self) -> None:
        """Apply logging configuration to all handlers."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.root_level)

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        formatter = logging.Formatter(self.format_string, self.date_format)

        handler = logging.StreamHandler()
        handler.setLevel(self.root_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

        if self.log_file:
            Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
            file_handler.setLevel(self.root_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        for module_name, level in self.module_levels.items():
            logging.getLogger(module_name).setLevel(level)

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> LoggingConfig:
        """
        Build from the `logging` section of config.yaml.

        Keys: level, format, date_format, file, modules {name: level},
        slow_operation_threshold_ms.
        """
        config = config or {}
        module_levels = MODULE_LOG_LEVELS.copy()
        for name, level in (config.get("modules") or {}).items():
            module_levels[name] = _parse_level(level)

        return cls(
            root_level=_parse_level(config.get("level", "INFO")),
            format_string=config.get("format", cls.format_string),
            date_format=config.get("date_format", cls.date_format),
            module_levels=module_levels,
            log_file=config.get("file"),
            slow_operation_threshold_ms=config.get(
                "slow_operation_threshold_ms", cls.slow_operation_threshold_ms
            ),
        )


def _parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, LogLevel(str(level).upper()).value)


class PerformanceLogger:
    """
    Logs durations of named operations.

    Used around scan and monitor cycles to spot slow runs.
    """

    def __init__(self, logger: logging.Logger, slow_threshold_ms: float = 30_000.0):
        self.logger = logger
        self.slow_threshold_ms = slow_threshold_ms
        self._stats: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @contextmanager
    def measure(self, operation_name: str, log_always: bool = False):
        """
        Context manager to measure operation duration.

        Example:
            with perf_logger.measure("monitor_cycle"):
                await agent.run_cycle()
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            with self._lock:
                self._stats[operation_name].append(duration_ms)

            if duration_ms > self.slow_threshold_ms:
                self.logger.warning(
                    f"Slow operation: {operation_name} took {duration_ms:.0f}ms "
                    f"(threshold: {self.slow_threshold_ms:.0f}ms)"
                )
            elif log_always:
                self.logger.debug(f"{operation_name} completed in {duration_ms:.0f}ms")

    def get_stats(self, operation_name: str) -> dict[str, float]:
        """Get timing statistics for an operation."""
        with self._lock:
            times = list(self._stats.get(operation_name, []))

        if not times:
            return {}

        return {
            "count": len(times),
            "mean_ms": statistics.mean(times),
            "median_ms": statistics.median(times),
            "min_ms": min(times),
            "max_ms": max(times),
        }


class ContextLogger:
    """
    Logger with automatic context injection.

    Prefixes messages with key=value context such as pair or cycle number.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self.logger = logger
        self.context = context or {}

    def with_context(self, **kwargs) -> ContextLogger:
        """Create new logger with additional context."""
        return ContextLogger(self.logger, {**self.context, **kwargs})

    def _format_message(self, message: str) -> str:
        if not self.context:
            return message

        context_str = " | ".join(f"{k}={v}" for k, v in self.context.items())
        return f"[{context_str}] {message}"

    def debug(self, message: str, *args, **kwargs):
        self.logger.debug(self._format_message(message), *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.logger.info(self._format_message(message), *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.logger.warning(self._format_message(message), *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self.logger.error(self._format_message(message), *args, **kwargs)

    def exception(self, message: str, *args, **kwargs):
        self.logger.exception(self._format_message(message), *args, **kwargs)


# Global configuration instance
_logging_config: LoggingConfig | None = None


def configure_logging(config: LoggingConfig | dict[str, Any] | None = None) -> LoggingConfig:
    """
    Configure logging for the engine.

    Args:
        config: LoggingConfig, the `logging` section of config.yaml, or None

    Returns:
        Applied configuration
    """
    global _logging_config

    if config is None:
        config = LoggingConfig()
    elif isinstance(config, dict):
        config = LoggingConfig.from_config(config)

    config.apply()
    _logging_config = config

    return config


def get_performance_logger(name: str, slow_threshold_ms: float | None = None) -> PerformanceLogger:
    """Performance logger using the configured slow threshold unless given."""
    if slow_threshold_ms is None:
        slow_threshold_ms = (
            _logging_config.slow_operation_threshold_ms
            if _logging_config is not None
            else LoggingConfig.slow_operation_threshold_ms
        )
    return PerformanceLogger(logging.getLogger(name), slow_threshold_ms=slow_threshold_ms)


def get_context_logger(name: str, **context) -> ContextLogger:
    """Context logger for a module."""
    return ContextLogger(logging.getLogger(name), context)
