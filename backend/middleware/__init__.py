"""Middleware package."""

from .logging import RequestLoggingMiddleware, configure_request_logging, redact_params

__all__ = [
    "RequestLoggingMiddleware",
    "configure_request_logging",
    "redact_params",
]
