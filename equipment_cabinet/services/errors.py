from __future__ import annotations

from typing import Any


class CabinetError(Exception):
    """Base for every business outcome the lending core reports to callers.

    ``code`` is the machine-readable kind, ``data`` carries structured detail
    (offending items, distances) the client needs to render a message.
    """

    status_code = 500
    code = "unexpected"

    def __init__(self, message: str, **data: Any):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "detail": self.message}
        payload.update(self.data)
        return payload


class ValidationError(CabinetError):
    status_code = 400
    code = "validation"


class AuthenticationError(CabinetError):
    status_code = 401
    code = "unauthorized"


class AuthorizationError(CabinetError):
    status_code = 403
    code = "forbidden"


class NotFoundError(CabinetError):
    status_code = 404
    code = "not_found"


class InvalidStateError(CabinetError):
    status_code = 409
    code = "invalid_state"


class TokenExpiredError(InvalidStateError):
    status_code = 410
    code = "token_expired"


class EligibilityError(CabinetError):
    status_code = 403
    code = "overdue_equipment"


class GeofenceError(CabinetError):
    status_code = 403
    code = "too_far"


class InsufficientStockError(CabinetError):
    status_code = 409
    code = "insufficient_stock"


class UnavailableError(CabinetError):
    status_code = 409
    code = "unavailable"


class UnexpectedError(CabinetError):
    status_code = 500
    code = "unexpected"
