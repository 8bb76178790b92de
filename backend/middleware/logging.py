"""Request/Response logging middleware for development and debugging.

Logs one line per request with a short request id, method, path, redacted
query parameters, client address, status and duration.

IMPORTANT: This middleware should only be enabled in development mode.
Request bodies are never logged: they carry passwords and refresh tokens.
"""

import logging
import time
import uuid
from typing import Callable, Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("api.requests")

# Paths to exclude from logging (noisy endpoints)
EXCLUDED_PATHS = {
    "/health",
    "/",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

# Query parameter names whose values never reach the log
SENSITIVE_PARAMS = {
    "token",
    "access_token",
    "refresh_token",
    "password",
    "current_password",
    "new_password",
    "key",
}

# Path segments that carry a secret in the following segment
SENSITIVE_PATH_MARKERS = ("/reset-password/",)

REDACTED = "***"


def redact_params(params: Mapping[str, str]) -> dict:
    """Copy of ``params`` with sensitive values replaced."""
    return {
        k: (REDACTED if k.lower() in SENSITIVE_PARAMS else v)
        for k, v in params.items()
    }


def redact_path(path: str) -> str:
    """Path with the secret after a sensitive marker replaced."""
    for marker in SENSITIVE_PATH_MARKERS:
        head, sep, _ = path.partition(marker)
        if sep:
            return f"{head}{sep}{REDACTED}"
    return path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs HTTP requests and responses.

    Adds an ``X-Request-ID`` header to every logged response for correlation.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        method = request.method
        path = redact_path(request.url.path)
        query_params = dict(request.query_params)
        client_ip = request.client.host if request.client else "unknown"

        log_parts = [
            f"[{request_id}]",
            f"{method} {path}",
        ]
        if query_params:
            log_parts.append(f"params={redact_params(query_params)}")
        if "authorization" in request.headers:
            log_parts.append("auth=bearer")
        log_parts.append(f"client={client_ip}")
        request_desc = " ".join(log_parts)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"{request_desc} - ERROR ({duration:.3f}s): {e}"
            )
            raise

        duration = time.time() - start_time
        status_code = response.status_code
        status_class = status_code // 100

        if status_class == 5:
            log_func = logger.error
        elif status_class == 4:
            log_func = logger.warning
        elif method == "GET":
            log_func = logger.debug
        else:
            log_func = logger.info

        log_func(
            f"{request_desc} - {status_code} ({duration:.3f}s)"
        )

        response.headers["X-Request-ID"] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """
    Configure the request logger with appropriate settings.

    Call this function during application startup.
    """
    request_logger = logging.getLogger("api.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    # Prevent duplicate emission via root logger handlers.
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )
        request_logger.addHandler(handler)
