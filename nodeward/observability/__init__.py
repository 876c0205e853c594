"""Observability for nodeward: loguru logging and Prometheus metrics."""

from .logging import CONSOLE_FORMAT, FILE_FORMAT, LogConfig, LogLevel, setup_logging, teardown_logging
from .metrics import MetricsCollector

__all__ = [
    "CONSOLE_FORMAT",
    "FILE_FORMAT",
    "LogConfig",
    "LogLevel",
    "MetricsCollector",
    "setup_logging",
    "teardown_logging",
]
