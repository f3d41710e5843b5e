"""
Domain errors raised by the stock ledger services.

Every error carries a stable ``code`` for machines, a human ``message`` and a
``detail`` payload (itemized counts, available quantities, violations) that
administrative tooling can surface as-is. ``stockdb.main`` maps each kind to
an HTTP status.
"""

from __future__ import annotations

from typing import Any, Optional


class StockError(Exception):
    """Base class for all recoverable ledger errors."""

    code = "stock_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.detail = detail if detail is not None else {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class ValidationError(StockError):
    """Missing or invalid fields, non-positive quantity, bad from/to pairing."""

    code = "validation_error"
    status_code = 400


class InsufficientStock(StockError):
    """The movement would drive a balance below zero."""

    code = "insufficient_stock"
    status_code = 409


class NotFound(StockError):
    """Unknown location, item, allocation, movement or receipt reference."""

    code = "not_found"
    status_code = 404


class StaleWrite(StockError):
    """The stored version advanced past the version the caller last read."""

    code = "stale_write"
    status_code = 409


class ReferentialIntegrityError(StockError):
    """A location deletion is blocked by live references."""

    code = "referential_integrity"
    status_code = 409


class OverConsumption(StockError):
    """Consumption exceeds what remains on the allocation."""

    code = "over_consumption"
    status_code = 409
