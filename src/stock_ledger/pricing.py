"""Derived unit-cost resolution.

An invoice often covers several products with a single total and no itemized
prices. Lines that arrive without a unit cost ("open" lines) share whatever
part of the amount paid the priced ("fixed") lines do not account for. Every
open line receives the same per-unit cost: the remaining amount divided by the
total open quantity.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from . import log
from .constants import EntryState
from .errors import PricingError

if TYPE_CHECKING:
    from .core_logic import LineRequest


@dataclass(frozen=True)
class PricedLine:
    """A line whose unit cost is known, either supplied or derived."""

    product_code: str
    quantity: Decimal
    unit_cost: Decimal
    cost_derived: bool

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True)
class PricingResult:
    """Outcome of resolving every line's unit cost."""

    lines: Tuple[PricedLine, ...]
    fixed_total: Decimal
    derived_unit_cost: Optional[Decimal]

    @property
    def subtotal(self) -> Decimal:
        return sum((line.subtotal for line in self.lines), Decimal("0"))


def partition_lines(lines: Sequence["LineRequest"]) -> Tuple[List["LineRequest"], List["LineRequest"]]:
    """Split lines into those with an explicit unit cost and those without."""
    fixed = [line for line in lines if line.unit_cost is not None]
    open_lines = [line for line in lines if line.unit_cost is None]
    return fixed, open_lines


def fixed_total(lines: Sequence["LineRequest"]) -> Decimal:
    """Sum ``quantity * unit_cost`` over lines that carry a unit cost."""
    return sum(
        (line.quantity * line.unit_cost for line in lines if line.unit_cost is not None),
        Decimal("0"),
    )


def resolve_unit_costs(lines: Sequence["LineRequest"], amount_paid: Decimal) -> PricingResult:
    """Resolve the unit cost of every line, deriving the missing ones.

    Args:
        lines: Validated line requests in request order.
        amount_paid: Aggregate amount paid for the whole entry.

    Returns:
        PricingResult: Priced lines in request order, the total of the
            fixed lines and the derived unit cost (``None`` when no line was
            open).

    Raises:
        PricingError: If open lines exist but the amount paid leaves nothing
            (or less than nothing) to distribute over them.
    """
    fixed, open_lines = partition_lines(lines)
    known_total = fixed_total(fixed)

    if not open_lines:
        priced = tuple(
            PricedLine(line.product_code, line.quantity, line.unit_cost, cost_derived=False) for line in lines
        )
        return PricingResult(lines=priced, fixed_total=known_total, derived_unit_cost=None)

    remaining = amount_paid - known_total
    if remaining <= Decimal("0"):
        log.warning(
            "Cannot derive costs: amount paid %s does not exceed priced lines total %s",
            amount_paid,
            known_total,
        )
        raise PricingError(
            f"Amount paid ({amount_paid}) must exceed the total of priced lines ({known_total}) "
            "to derive the cost of lines without a price",
            state=EntryState.PRICING,
        )

    open_quantity = sum((line.quantity for line in open_lines), Decimal("0"))
    if open_quantity == Decimal("0"):
        raise PricingError("Lines without a price have no quantity to spread the cost over", state=EntryState.PRICING)

    derived = remaining / open_quantity
    log.debug("Derived unit cost %s from remaining %s over quantity %s", derived, remaining, open_quantity)

    priced = tuple(
        PricedLine(line.product_code, line.quantity, line.unit_cost, cost_derived=False)
        if line.unit_cost is not None
        else PricedLine(line.product_code, line.quantity, derived, cost_derived=True)
        for line in lines
    )
    return PricingResult(lines=priced, fixed_total=known_total, derived_unit_cost=derived)
