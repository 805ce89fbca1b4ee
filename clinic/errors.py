from __future__ import annotations

from typing import Any


class ClinicError(Exception):
    """Errore di dominio con messaggio leggibile, tradotto in risposta JSON al confine HTTP."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class NotFoundError(ClinicError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidStateError(ClinicError):
    code = "INVALID_STATE"


class SlotUnavailableError(ClinicError):
    status_code = 409
    code = "SLOT_UNAVAILABLE"


class BusinessRuleError(ClinicError):
    code = "BUSINESS_RULE"
