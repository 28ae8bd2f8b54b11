from typing import Any

from fastapi import HTTPException


def _auth_401(code: str, message: str) -> HTTPException:
    # keep WWW-Authenticate so Bearer clients recognise the challenge
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


class ToolcribError(Exception):
    """Base for workflow errors: a stable code plus a human-readable reason."""

    code = "ERROR"
    status_code = 400

    def __init__(self, message: str, errors: list[Any] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_detail(self) -> dict:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.errors:
            detail["errors"] = self.errors
        return detail


class ValidationError(ToolcribError):
    code = "VALIDATION_ERROR"
    status_code = 400


class DuplicateError(ToolcribError):
    code = "DUPLICATE"
    status_code = 409


class NotFoundError(ToolcribError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidTransferError(ToolcribError):
    code = "INVALID_TRANSFER"
    status_code = 400


class InsufficientStockError(ToolcribError):
    code = "INSUFFICIENT_STOCK"
    status_code = 400


class InsufficientBalanceError(ToolcribError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 400


class ConcurrencyConflictError(ToolcribError):
    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class InvalidStateError(ToolcribError):
    code = "INVALID_STATE"
    status_code = 409


class PermissionDeniedError(ToolcribError):
    code = "FORBIDDEN"
    status_code = 403


class StoreUnavailableError(ToolcribError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
