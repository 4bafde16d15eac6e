"""Logging and health endpoints shared by the storefront service."""

from .health import HealthStatus, ServiceHealth
from .logging_config import RequestLoggingMiddleware, get_logger, set_request_context, setup_logging

__all__ = [
    "HealthStatus",
    "ServiceHealth",
    "RequestLoggingMiddleware",
    "get_logger",
    "set_request_context",
    "setup_logging",
]
