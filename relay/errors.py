from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error payload returned when a request is rejected:
    {
        "error": "bad_request",
        "message": "Missing field 'header.event_id'",
        "code": 400,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


class RelayError(Exception):
    """Base class for relay domain errors."""


class MalformedInboundPayload(RelayError):
    """Raised when an inbound webhook body lacks the fields we rely on."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details


class UnsupportedMessageKind(RelayError):
    """Raised for message kinds other than plain text."""

    def __init__(self, message_type: str) -> None:
        super().__init__(f"Unsupported message type: {message_type}")
        self.message_type = message_type


class StoreUnavailable(RelayError):
    """
    Raised by storage backends when the underlying store cannot be reached.
    Requests fail visibly instead of silently dropping conversation state.
    """

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend} store unavailable: {message}")
        self.backend = backend


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def unauthorized(message: str) -> HTTPException:
    return http_error(status.HTTP_401_UNAUTHORIZED, error="unauthorized", message=message)


def service_unavailable(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        error="service_unavailable",
        message=message,
        details=details,
    )


__all__ = [
    "ErrorResponse",
    "RelayError",
    "MalformedInboundPayload",
    "UnsupportedMessageKind",
    "StoreUnavailable",
    "http_error",
    "bad_request",
    "unauthorized",
    "service_unavailable",
]
