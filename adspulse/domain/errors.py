from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


INTERNAL_ERROR_MESSAGE = "Unexpected server error."

_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_409_CONFLICT: "CONFLICT",
    422: "VALIDATION_ERROR",
    status.HTTP_429_TOO_MANY_REQUESTS: "RATE_LIMIT_EXCEEDED",
    status.HTTP_503_SERVICE_UNAVAILABLE: "SERVICE_UNAVAILABLE",
}


class ApiError(HTTPException):
    """HTTP error with a machine-readable code.

    Only exposed errors show their message and details to the caller; the rest
    are masked behind a generic message and logged in full.
    """

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any = None,
        expose: bool = True,
    ) -> None:
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message
        self.details = details
        self.expose = expose

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "INTERNAL_ERROR"
    return _STATUS_CODES.get(status_code, "HTTP_ERROR")


def normalize_api_error(exc: Exception) -> ApiError:
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else code_for_status(exc.status_code).lower()
        return ApiError(
            status_code=exc.status_code,
            code=code_for_status(exc.status_code),
            message=message,
            expose=exc.status_code < 500,
        )
    return ApiError(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        message=INTERNAL_ERROR_MESSAGE,
        details=str(exc),
        expose=False,
    )


def error_payload(error: ApiError) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": error.code,
        "message": error.message if error.expose else INTERNAL_ERROR_MESSAGE,
    }
    if error.expose and error.details is not None:
        payload["details"] = error.details
    return payload
