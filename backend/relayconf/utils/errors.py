"""
Error handling utilities for safe, standardized error responses.

Standard Error Response Format:
{
    "detail": {
        "code": "ERROR_CODE",
        "message": "Human readable message",
        "details": {...}            # optional
    }
}
"""
from enum import Enum
from typing import Optional, Dict, Any
from loguru import logger
from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Authentication errors (401)
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (400/422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MTA_VALIDATION_FAILED = "MTA_VALIDATION_FAILED"

    # Conflict errors (409/423)
    NOTHING_TO_APPLY = "NOTHING_TO_APPLY"
    BUSY = "BUSY"

    # Server errors (500/502)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    EXTERNAL_TOOL_FAILURE = "EXTERNAL_TOOL_FAILURE"
    RELOAD_FAILED = "RELOAD_FAILED"
    VERIFY_FAILED = "VERIFY_FAILED"
    WRITE_FAILURE = "WRITE_FAILURE"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Create a standardized error response dict.

    Args:
        code: Error code enum value
        message: Human-readable error message
        status_code: HTTP status code (for reference, not included in response)
        details: Optional additional details

    Returns:
        Error response dict suitable for HTTPException detail
    """
    response = {
        "code": code.value,
        "message": message
    }
    if details:
        response["details"] = details
    return response


async def engine_error_handler(request: Request, exc) -> JSONResponse:
    """
    Exception handler translating engine errors into the standard error body.

    Registered for ConfigEngineError in main.py. Server-side failures are
    logged here; client errors (validation, busy, nothing to apply) are not.
    """
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed [{exc.code.value}]: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": create_error_response(exc.code, str(exc), exc.status_code, exc.details())},
    )
