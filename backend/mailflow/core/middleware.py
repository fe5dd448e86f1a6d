"""
Request Middleware for Mailflow

Provides:
- Request ID tracking
- Ledger identifiers from the query string bound to every log line
- Unsubscribe tokens kept out of access logs
- Response timing header
"""

import re
import time
import uuid
from typing import Callable, Dict
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import get_logger, LogContext

logger = get_logger(__name__)

# Query parameters copied into the log context, camelCase on the wire
CONTEXT_PARAMS = {
    "userId": "user_id",
    "flowId": "flow_id",
    "flowTriggerId": "flow_trigger_id",
}

_TOKEN_PATH = re.compile(r"(/unsubscribe/)[^/]+")
QUIET_PATHS = {"/health"}


def loggable_path(path: str) -> str:
    """The request path with any unsubscribe token replaced."""
    return _TOKEN_PATH.sub(r"\1***", path)


def request_context(request: Request) -> Dict[str, str]:
    context = {
        key: request.query_params[param]
        for param, key in CONTEXT_PARAMS.items()
        if request.query_params.get(param)
    }
    context["request_id"] = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
    return context


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add request context for logging and tracking.

    Adds:
    - Unique request ID (X-Request-ID header)
    - Request timing
    - One log line per request, none for health probes
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        context = request_context(request)
        request_id = context["request_id"]
        path = loggable_path(request.url.path)
        quiet = request.url.path in QUIET_PATHS
        start_time = time.perf_counter()

        with LogContext(**context):
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    f"Request failed: {request.method} {path}",
                    extra={
                        "method": request.method,
                        "path": path,
                        "duration_ms": round(duration_ms, 2),
                        "error_type": type(e).__name__,
                    },
                    exc_info=True
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            if response.status_code >= 400:
                log_level = "warning"
            elif quiet:
                log_level = "debug"
            else:
                log_level = "info"
            getattr(logger, log_level)(
                f"{request.method} {path} -> {response.status_code}",
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                }
            )
            return response
