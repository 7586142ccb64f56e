"""Shared core utilities.

Health checks and structured logging used by the checkout service.
"""

from .health import ServiceHealth, HealthStatus
from .logging_config import (
    setup_logging,
    get_logger,
    RequestLoggingMiddleware,
    SecurityFilter,
    set_request_context,
    generate_request_id,
    LoggerAdapter,
)

__all__ = [
    # Health checks
    "ServiceHealth",
    "HealthStatus",
    # Logging
    "setup_logging",
    "get_logger",
    "RequestLoggingMiddleware",
    "SecurityFilter",
    "set_request_context",
    "generate_request_id",
    "LoggerAdapter",
]
