from __future__ import annotations

from datetime import datetime
from typing import Any


class MetaSyncError(Exception):
    """Base class for every error raised by the MetaSync client."""


class ApiError(MetaSyncError):
    """The service answered with a non-success HTTP status."""

    status_code: int = 0

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = int(status_code)
        self.details = details


class ValidationError(ApiError):
    status_code = 400


class UnauthorizedError(ApiError):
    status_code = 401


class ForbiddenError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409


class TooManyRequestsError(ApiError):
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
        recommended_retry_time: datetime | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, details=details)
        self.recommended_retry_time = recommended_retry_time


class InternalError(ApiError):
    status_code = 500


class ApiTimeoutError(MetaSyncError):
    """A wait operation did not reach its target state before the deadline."""


class NotConnectedError(MetaSyncError):
    """The operation needs an open streaming connection."""


class TradeError(MetaSyncError):
    def __init__(self, message: str, numeric_code: int | None, string_code: str | None) -> None:
        super().__init__(message)
        self.numeric_code = numeric_code
        self.string_code = string_code

    def __str__(self) -> str:
        return f"{self.string_code or 'TRADE_ERROR'} ({self.numeric_code}): {self.args[0]}"


_STATUS_ERRORS: dict[int, type[ApiError]] = {
    400: ValidationError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    429: TooManyRequestsError,
}


def error_for_status(status_code: int) -> type[ApiError]:
    if status_code in _STATUS_ERRORS:
        return _STATUS_ERRORS[status_code]
    if status_code >= 500:
        return InternalError
    return ApiError
