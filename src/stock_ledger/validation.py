"""Structural and business-rule checks for stock-entry requests.

Nothing here touches storage. :func:`validate_entry` either raises
:class:`~stock_ledger.errors.ValidationError` naming the offending field or
returns a normalized copy of the command (trimmed product codes, every
numeric value as a :class:`~decimal.Decimal`).
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Dict, List, Optional

from . import log
from .constants import EntryState
from .errors import ValidationError

if TYPE_CHECKING:
    from .core_logic import LineRequest, StockEntryCommand


def as_decimal(value: object, *, field: str) -> Decimal:
    """Coerce ``value`` into a finite Decimal or raise ``ValidationError``."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", field=field, state=EntryState.VALIDATING)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", field=field, state=EntryState.VALIDATING) from exc
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field, state=EntryState.VALIDATING)
    return number


def require_positive(value: object, *, field: str, label: str) -> Decimal:
    """Validate that ``value`` is strictly positive and return it as a Decimal.

    Args:
        value (object): Number supplied by the caller.
        field (str): Request path used in the error, e.g. ``lines[0].quantity``.
        label (str): Human wording for the value in the error message.

    Raises:
        ValidationError: If the value is not a finite number greater than zero.
    """
    number = as_decimal(value, field=field)
    if number <= Decimal("0"):
        log.warning("Validation failed for %s: %s", field, value)
        raise ValidationError(f"{label} must be greater than zero", field=field, state=EntryState.VALIDATING)
    return number


def normalize_code(code: Optional[str]) -> str:
    return code.strip() if isinstance(code, str) else ""


def validate_entry(command: "StockEntryCommand") -> "StockEntryCommand":
    """Check an entry request and return its normalized form.

    Rules: at least one line; amount paid > 0; every line has a non-blank
    product code and a quantity > 0; an explicit unit cost, when present, is
    > 0; no product code appears twice (duplicates are rejected, not merged).
    A blank supplier id or blank notes are treated as absent.

    Raises:
        ValidationError: On the first rule that fails, with ``field`` set to
            the offending request path.
    """
    if not command.lines:
        log.warning("Validation failed: entry has no lines")
        raise ValidationError("An entry needs at least one line", field="lines", state=EntryState.VALIDATING)

    amount_paid = require_positive(command.amount_paid, field="amount_paid", label="Amount paid")

    seen: Dict[str, int] = {}
    normalized: List["LineRequest"] = []
    for index, line in enumerate(command.lines):
        prefix = f"lines[{index}]"
        code = normalize_code(line.product_code)
        if not code:
            log.warning("Validation failed: line %d has no product code", index + 1)
            raise ValidationError(
                f"Line {index + 1}: product code is required",
                field=f"{prefix}.product_code",
                state=EntryState.VALIDATING,
            )
        quantity = require_positive(line.quantity, field=f"{prefix}.quantity", label=f"Line {index + 1}: quantity")
        unit_cost = None
        if line.unit_cost is not None:
            unit_cost = require_positive(line.unit_cost, field=f"{prefix}.unit_cost", label=f"Line {index + 1}: unit cost")
        if code in seen:
            log.warning("Validation failed: product '%s' repeated on lines %d and %d", code, seen[code] + 1, index + 1)
            raise ValidationError(
                f"Product '{code}' appears on lines {seen[code] + 1} and {index + 1}",
                field=f"{prefix}.product_code",
                state=EntryState.VALIDATING,
            )
        seen[code] = index
        normalized.append(replace(line, product_code=code, quantity=quantity, unit_cost=unit_cost))

    supplier_id = normalize_code(command.supplier_id) or None
    notes = command.notes.strip() if isinstance(command.notes, str) and command.notes.strip() else None
    return replace(
        command,
        amount_paid=amount_paid,
        lines=tuple(normalized),
        supplier_id=supplier_id,
        notes=notes,
        tax_inclusive=bool(command.tax_inclusive),
    )
