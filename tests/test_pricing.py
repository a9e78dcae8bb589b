"""Unit tests for derived unit-cost resolution and tax allocation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from stock_ledger import pricing, tax
from stock_ledger.constants import MONEY_TOLERANCE, EntryState
from stock_ledger.core_logic import LineRequest
from stock_ledger.errors import PricingError, TaxError


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def test_resolve_unit_costs_keeps_fixed_lines():
    """Fully priced requests are returned unchanged and flagged as supplied."""

    lines = [LineRequest("P1", Decimal("10"), Decimal("5.00")), LineRequest("P2", Decimal("2"), Decimal("1.50"))]

    result = pricing.resolve_unit_costs(lines, Decimal("60"))

    assert [line.unit_cost for line in result.lines] == [Decimal("5.00"), Decimal("1.50")]
    assert not any(line.cost_derived for line in result.lines)
    assert result.fixed_total == Decimal("53.00")
    assert result.derived_unit_cost is None


def test_resolve_unit_costs_single_open_line():
    result = pricing.resolve_unit_costs([LineRequest("P1", Decimal("4"))], Decimal("100"))

    assert result.lines[0].unit_cost == Decimal("25")
    assert result.lines[0].cost_derived is True
    assert result.subtotal == Decimal("100")


def test_resolve_unit_costs_mixed_lines_share_remaining_amount():
    """Open lines all receive the same unit cost and absorb the remainder."""

    lines = [
        LineRequest("P1", Decimal("2"), Decimal("10")),
        LineRequest("P2", Decimal("3")),
        LineRequest("P3", Decimal("5")),
    ]

    result = pricing.resolve_unit_costs(lines, Decimal("100"))

    assert [line.product_code for line in result.lines] == ["P1", "P2", "P3"]
    assert result.derived_unit_cost == Decimal("10")
    assert result.lines[1].unit_cost == result.lines[2].unit_cost == Decimal("10")
    open_subtotal = sum(line.subtotal for line in result.lines if line.cost_derived)
    assert open_subtotal == Decimal("100") - result.fixed_total


def test_resolve_unit_costs_keeps_full_precision():
    """Derived costs are not rounded before they are stored."""

    result = pricing.resolve_unit_costs([LineRequest("P1", Decimal("3"))], Decimal("10"))

    assert result.lines[0].unit_cost == Decimal("10") / Decimal("3")
    assert abs(result.subtotal - Decimal("10")) <= MONEY_TOLERANCE


@pytest.mark.parametrize("amount_paid", [Decimal("20"), Decimal("15")])
def test_resolve_unit_costs_requires_remaining_amount(amount_paid):
    """Open lines need a strictly positive remainder to share."""

    lines = [LineRequest("P1", Decimal("2"), Decimal("10")), LineRequest("P2", Decimal("1"))]

    with pytest.raises(PricingError) as excinfo:
        pricing.resolve_unit_costs(lines, amount_paid)

    assert excinfo.value.state is EntryState.PRICING
    assert excinfo.value.kind == "pricing"


def test_partition_lines_splits_fixed_and_open():
    fixed, open_lines = pricing.partition_lines(
        [LineRequest("P1", Decimal("1"), Decimal("2")), LineRequest("P2", Decimal("1"))]
    )

    assert [line.product_code for line in fixed] == ["P1"]
    assert [line.product_code for line in open_lines] == ["P2"]


# ---------------------------------------------------------------------------
# Tax
# ---------------------------------------------------------------------------


def _priced(*pairs):
    return [pricing.PricedLine(f"P{i}", Decimal(q), Decimal(c), False) for i, (q, c) in enumerate(pairs, start=1)]


def test_allocate_tax_without_flag_is_zero_even_when_overpaid():
    allocation = tax.allocate_tax(_priced(("10", "5")), Decimal("59"), tax_inclusive=False)

    assert allocation.subtotal == Decimal("50")
    assert allocation.tax_amount == Decimal("0")
    assert allocation.amount_paid == Decimal("59")


def test_allocate_tax_with_flag_takes_the_residual():
    allocation = tax.allocate_tax(_priced(("10", "5")), Decimal("59"), tax_inclusive=True)

    assert allocation.tax_amount == Decimal("9")
    assert allocation.subtotal + allocation.tax_amount == allocation.amount_paid


def test_allocate_tax_rejects_payment_below_subtotal():
    with pytest.raises(TaxError) as excinfo:
        tax.allocate_tax(_priced(("10", "5")), Decimal("40"), tax_inclusive=True)

    assert excinfo.value.kind == "tax"
    assert excinfo.value.state is EntryState.PRICING


@pytest.mark.parametrize("amount_paid", ["79.996", "79.9999999"])
def test_allocate_tax_rejects_any_shortfall_on_supplied_costs(amount_paid):
    """Without derived costs there is no rounding to forgive."""

    with pytest.raises(TaxError):
        tax.allocate_tax(_priced(("8", "10")), Decimal(amount_paid), tax_inclusive=True)


def test_allocate_tax_absorbs_division_residue():
    """Rounding left by a derived cost yields zero tax and an exact header."""

    derived = pricing.resolve_unit_costs([LineRequest("P1", Decimal("3"))], Decimal("10"))
    assert derived.subtotal < Decimal("10")

    allocation = tax.allocate_tax(derived.lines, Decimal("10"), tax_inclusive=True)

    assert allocation.tax_amount == Decimal("0")
    assert allocation.subtotal + allocation.tax_amount == allocation.amount_paid


def test_division_residue_only_covers_derived_lines():
    mixed = [
        pricing.PricedLine("P1", Decimal("2"), Decimal("10"), False),
        pricing.PricedLine("P2", Decimal("3"), Decimal("10") / Decimal("3"), True),
    ]

    assert tax.division_residue(_priced(("8", "10")), Decimal("80")) == Decimal("0")
    assert Decimal("0") < tax.division_residue(mixed, Decimal("30")) < Decimal("1e-20")


def test_allocate_tax_rejects_half_cent_shortfall_with_derived_lines():
    lines = [
        pricing.PricedLine("P1", Decimal("8"), Decimal("10"), False),
        pricing.PricedLine("P2", Decimal("1"), Decimal("0.001"), True),
    ]

    with pytest.raises(TaxError):
        tax.allocate_tax(lines, Decimal("79.997"), tax_inclusive=True)
