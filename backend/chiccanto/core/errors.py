from __future__ import annotations

from typing import Any


class ApiError(Exception):
    """Error that maps directly onto an HTTP JSON response.

    Services raise subclasses of this; the app-level exception handler renders
    ``{"ok": false, "error": ..., "errorCode": ...}`` with ``status_code``.
    """

    status_code: int = 500
    error: str = "Server error."
    error_code: str | None = None

    def __init__(
        self,
        error: str | None = None,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.extra = dict(extra or {})
        self.headers = dict(headers or {})
        super().__init__(self.error)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "error": self.error}
        if self.error_code:
            payload["errorCode"] = self.error_code
        payload.update(self.extra)
        return payload


class BadRequestError(ApiError):
    status_code = 400
    error = "Invalid request."


class UnauthorizedError(ApiError):
    status_code = 401
    error = "Unauthorized."


class NotFoundError(ApiError):
    status_code = 404
    error = "Not found"
    error_code = "NOT_FOUND"


class ConflictError(ApiError):
    status_code = 409
    error = "Conflict."


class MisconfiguredError(ApiError):
    status_code = 500

    def __init__(self, missing: str) -> None:
        super().__init__(f"Server misconfigured: missing {missing}.")
