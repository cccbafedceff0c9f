"""Error taxonomy shared by the core services and the HTTP layer."""

from __future__ import annotations


class ErrorCode:
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"


HTTP_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.CONFLICT: 409,
    ErrorCode.UNAVAILABLE: 503,
}


class CoreError(Exception):
    """Hard failure: an invariant was breached or a dependency is missing."""

    code = ErrorCode.CONFLICT

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE[self.code]

    def to_response(self) -> dict[str, str | None]:
        return {"error": self.code, "reason": self.reason, "message": self.message}


class NotFoundError(CoreError):
    code = ErrorCode.NOT_FOUND


class ForbiddenError(CoreError):
    code = ErrorCode.FORBIDDEN


class ConflictError(CoreError):
    code = ErrorCode.CONFLICT


class StoreUnavailableError(CoreError):
    """Persistence layer unreachable. Propagated as-is; retries belong to the caller."""

    code = ErrorCode.UNAVAILABLE
