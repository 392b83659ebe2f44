"""
Custom exception classes and error handling.

Provides consistent error responses across the API.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """
    Resource conflict (e.g., a sync already in flight).

    `context` is merged into the response body so clients can act on it,
    e.g. {"error": "sync_in_progress", "jobId": "..."}.
    """

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        body: Any = detail
        if context:
            body = {"error": detail, **context}
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=body,
            error_code="CONFLICT"
        )
