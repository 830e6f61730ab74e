"""
Logging Configuration

This module provides structured logging configuration for InsightSync
using structlog for better observability and debugging.
"""

import logging
import re
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

from insightsync import __version__
from insightsync.config.settings import get_settings

_TOKEN_PATTERN = re.compile(r"(access_token=)[^&\s]+")


def setup_logging() -> None:
    """Set up structured logging for the application."""
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.is_development:
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])
    else:
        # JSON output for log aggregation
        processors.extend([
            add_app_context,
            structlog.processors.JSONRenderer(),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def add_app_context(logger: Any, name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add application context to log entries."""
    settings = get_settings()

    event_dict["app"] = "insightsync"
    event_dict["version"] = __version__
    event_dict["environment"] = settings.environment

    return event_dict


def redact_token(text: str) -> str:
    """Mask access_token query values in a URL or message."""
    return _TOKEN_PATTERN.sub(r"\1***", text)


def log_external_api_call(
    service: str,
    operation: str,
    success: bool,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """Log external API call details."""
    logger = structlog.get_logger("external_api")
    log_data = {
        "service": service,
        "operation": operation,
        "success": success,
        **kwargs
    }

    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    if success:
        logger.info("External API call successful", **log_data)
    else:
        logger.warning("External API call failed", **log_data)
