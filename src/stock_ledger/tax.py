"""Tax extraction for tax-inclusive payments.

No rate table is consulted: when the amount paid is marked tax-inclusive the
tax is simply what is left after the subtotal of goods. This mirrors how the
paper invoices are entered today and is not a VAT calculator.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, getcontext
from typing import Iterable, Sequence

from . import log
from .constants import EntryState
from .errors import TaxError
from .pricing import PricedLine


@dataclass(frozen=True)
class TaxAllocation:
    subtotal: Decimal
    tax_amount: Decimal
    amount_paid: Decimal
    tax_inclusive: bool


def division_residue(lines: Sequence[PricedLine], amount_paid: Decimal) -> Decimal:
    """Largest shortfall that rounding of derived unit costs can produce.

    Zero when every cost was supplied. Otherwise a few units in the last
    place of the current decimal context, scaled by the amount paid, per
    derived line.
    """
    derived = sum(1 for line in lines if line.cost_derived)
    if not derived:
        return Decimal("0")
    scale = max(abs(amount_paid), Decimal("1"))
    return scale.scaleb(2 - getcontext().prec) * derived


def allocate_tax(lines: Iterable[PricedLine], amount_paid: Decimal, *, tax_inclusive: bool) -> TaxAllocation:
    """Split ``amount_paid`` into the subtotal of goods and a tax residual.

    Without the tax-inclusive flag the tax is zero and any excess of the amount
    paid over the subtotal is tolerated. With it, the tax is
    ``amount_paid - subtotal`` and any shortfall is an error, except the
    rounding residue of derived costs (see :func:`division_residue`). Such a
    residue is absorbed into the subtotal so that ``subtotal + tax_amount``
    equals ``amount_paid`` exactly.

    Raises:
        TaxError: If a tax-inclusive amount paid is below the subtotal.
    """
    lines = tuple(lines)
    subtotal = sum((line.subtotal for line in lines), Decimal("0"))

    if not tax_inclusive:
        return TaxAllocation(subtotal=subtotal, tax_amount=Decimal("0"), amount_paid=amount_paid, tax_inclusive=False)

    if amount_paid < subtotal:
        if subtotal - amount_paid > division_residue(lines, amount_paid):
            log.warning("Tax-inclusive amount paid %s is below subtotal %s", amount_paid, subtotal)
            raise TaxError(
                f"Amount paid ({amount_paid}) cannot be less than the subtotal before tax ({subtotal})",
                state=EntryState.PRICING,
            )
        log.debug("Absorbed derived-cost residue %s into subtotal", subtotal - amount_paid)
        subtotal = amount_paid

    return TaxAllocation(
        subtotal=subtotal,
        tax_amount=amount_paid - subtotal,
        amount_paid=amount_paid,
        tax_inclusive=True,
    )
