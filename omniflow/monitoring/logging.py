"""
OmniFlow Bridge - Structured Logging

Logging configuration using structlog.

Features:
- JSON output for production
- Pretty console output for development
- Operation duration logging
- Sensitive value redaction
- Signed payload shortening
- Per-transfer context binding
"""

from __future__ import annotations

import logging
import re
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

from .. import __version__

# =============================================================================
# Custom Processors
# =============================================================================

SENSITIVE_KEYS = {
    "password",
    "secret",
    "private_key",
    "privatekey",
    "secret_key",
    "signing_key",
    "mnemonic",
    "seed",
    "api_key",
    "authorization",
    "redis_password",
    "signed_payload",
}


def add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO8601 timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def add_service_info(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add service identification info."""
    event_dict["service"] = "omniflow-bridge"
    event_dict["version"] = __version__
    return event_dict


def add_log_level(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add numeric log level for filtering."""
    level_map = {
        "debug": 10,
        "info": 20,
        "warning": 30,
        "error": 40,
        "critical": 50,
    }
    event_dict["level_number"] = level_map.get(method_name, 20)
    return event_dict


def sanitize_sensitive_data(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mask values whose key looks like a credential."""

    def _sanitize(obj: Any, depth: int = 0) -> Any:
        if depth > 10:
            return obj
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]"
                if isinstance(k, str) and any(s in k.lower() for s in SENSITIVE_KEYS)
                else _sanitize(v, depth + 1)
                for k, v in obj.items()
            }
        elif isinstance(obj, list):
            return [_sanitize(item, depth + 1) for item in obj]
        return obj

    result: EventDict = _sanitize(event_dict)
    return result


# Keys carrying signed transactions or attestation blobs
PAYLOAD_KEYS = {
    "raw",
    "raw_transaction",
    "signed_tx",
    "vaa",
    "attestation_payload",
    "cctp_message",
}
PAYLOAD_PREVIEW_CHARS = 18


def shorten_payloads(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Replace raw bytes and signed payloads with a short preview."""
    for key, value in list(event_dict.items()):
        if isinstance(value, (bytes, bytearray)):
            event_dict[key] = f"<{len(value)} bytes>"
        elif key in PAYLOAD_KEYS and isinstance(value, str) and len(value) > PAYLOAD_PREVIEW_CHARS:
            size = len(value.removeprefix("0x")) // 2
            event_dict[key] = f"{value[:PAYLOAD_PREVIEW_CHARS]}...<{size} bytes>"
    return event_dict


def normalize_enums(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Render networks, statuses and protocols by value."""
    for key, value in list(event_dict.items()):
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def drop_color_codes(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Remove ANSI color codes for clean log output."""

    def _clean(obj: Any) -> Any:
        if isinstance(obj, str):
            return re.sub(r"\x1b\[[0-9;]*m", "", obj)
        elif isinstance(obj, dict):
            return {k: _clean(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [_clean(item) for item in obj]
        return obj

    result: EventDict = _clean(event_dict)
    return result


# =============================================================================
# Logging Configuration
# =============================================================================

def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    include_service_info: bool = True,
) -> None:
    """
    Configure structured logging for the orchestrator.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format (for production)
        include_service_info: Add service name/version
    """
    processors: list[Any] = [
        add_timestamp,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_log_level,
        normalize_enums,
        shorten_payloads,
        sanitize_sensitive_data,
    ]

    if include_service_info:
        processors.insert(0, add_service_info)

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(drop_color_codes)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    # Reduce noise from third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (defaults to module name)

    Returns:
        Configured structlog logger
    """
    bound_logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return bound_logger


# =============================================================================
# Performance Logging
# =============================================================================

@contextmanager
def log_duration(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    level: str = "info",
    **extra_context: Any,
) -> Iterator[None]:
    """
    Context manager to log operation duration.

    Usage:
        with log_duration(logger, "network_status_sample", chains=4):
            await aggregator.sample()
    """
    start_time = time.monotonic()
    log_method = getattr(logger, level)

    try:
        yield
        duration_ms = (time.monotonic() - start_time) * 1000
        log_method(
            f"{operation}_completed",
            duration_ms=round(duration_ms, 2),
            **extra_context,
        )
    except Exception as e:
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.error(
            f"{operation}_failed",
            duration_ms=round(duration_ms, 2),
            error=str(e),
            **extra_context,
        )
        raise


# =============================================================================
# Transfer Context
# =============================================================================

@contextmanager
def transfer_context(transfer_id: str, **context: Any) -> Iterator[None]:
    """
    Bind transfer_id (and any extra fields) to every log line emitted inside.

    Usage:
        with transfer_context(transfer.id, route="ethereum->solana"):
            await machine.advance()
    """
    with structlog.contextvars.bound_contextvars(transfer_id=transfer_id, **context):
        yield


__all__ = [
    "configure_logging",
    "get_logger",
    "log_duration",
    "transfer_context",
]
