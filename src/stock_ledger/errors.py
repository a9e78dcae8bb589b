"""Exception taxonomy for the stock ledger.

Every error raised by the ledger carries a machine-readable ``kind`` and the
pipeline ``state`` it was raised in so callers can react without parsing
messages.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from .constants import EntryState


class LedgerError(Exception):
    """Base class for all ledger failures."""

    kind = "ledger"

    def __init__(self, message: str, *, state: Optional[EntryState] = None) -> None:
        super().__init__(message)
        self.message = message
        self.state = state

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Return a structured representation suitable for a response body."""
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "state": self.state.value if self.state is not None else None,
        }
        payload.update(self.details())
        return payload


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""

    kind = "business_rule"


class ValidationError(BusinessRuleViolation):
    """Raised when an entry request is malformed or out of range."""

    kind = "validation"

    def __init__(self, message: str, *, field: Optional[str] = None, state: Optional[EntryState] = None) -> None:
        super().__init__(message, state=state)
        self.field = field

    def details(self) -> Dict[str, Any]:
        return {"field": self.field}


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or supplier is unknown or inactive."""

    kind = "reference"

    def __init__(
        self,
        message: str,
        *,
        missing_products: Sequence[str] = (),
        missing_supplier: Optional[str] = None,
        state: Optional[EntryState] = None,
    ) -> None:
        super().__init__(message, state=state)
        self.missing_products = tuple(missing_products)
        self.missing_supplier = missing_supplier

    def details(self) -> Dict[str, Any]:
        return {
            "missing_products": list(self.missing_products),
            "missing_supplier": self.missing_supplier,
        }


class PricingError(BusinessRuleViolation):
    """Raised when open-line costs cannot be derived from the amount paid."""

    kind = "pricing"


class TaxError(BusinessRuleViolation):
    """Raised when a tax-inclusive payment is below the untaxed subtotal."""

    kind = "tax"


class StorageError(LedgerError):
    """Raised when the store transaction fails; the store has been rolled back."""

    kind = "storage"


__all__ = [
    "LedgerError",
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "PricingError",
    "TaxError",
    "StorageError",
]
