"""Logging for dutctl."""

from dutctl.telemetry.logger import (
    LoggerMixin,
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
    unbind_context,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LoggerMixin",
]
