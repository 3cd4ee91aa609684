"""
Correlation ID middleware for request and operation tracing.
"""
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# Context variable to store correlation ID for the current request or operation
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the correlation ID for the current context."""
    return correlation_id_var.get()


def new_correlation_id() -> str:
    return str(uuid.uuid4())[:8]  # Short 8-char ID for readability


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Ensure log lines inside the block share a correlation ID.

    An ID already set by the request middleware is kept, so an apply
    triggered over HTTP logs under the request's ID.
    """
    current = correlation_id_var.get()
    if current and correlation_id is None:
        yield current
        return
    token = correlation_id_var.set(correlation_id or new_correlation_id())
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a correlation ID to each request.

    The correlation ID is:
    1. Read from X-Correlation-ID header if present (for distributed tracing)
    2. Generated as a new short UUID if not present
    3. Stored in context for access in logs and audit entries
    4. Added to response headers
    """

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(self.HEADER_NAME)
        if not correlation_id:
            correlation_id = new_correlation_id()

        token = correlation_id_var.set(correlation_id)

        try:
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = correlation_id
            return response
        finally:
            correlation_id_var.reset(token)


def correlation_id_filter(record):
    """
    Loguru filter that adds correlation_id to log records.
    """
    record["extra"]["correlation_id"] = get_correlation_id() or "-"
    return True
