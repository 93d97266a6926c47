"""
OmniFlow Monitoring

Structured logging setup and helpers.
"""

from .logging import configure_logging, get_logger, log_duration, transfer_context

__all__ = [
    "configure_logging",
    "get_logger",
    "log_duration",
    "transfer_context",
]
