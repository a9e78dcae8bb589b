"""Tests for ledger listings, single-entry reads and summaries."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from stock_ledger import core_logic, data_manager, queries
from stock_ledger.core_logic import LineRequest, StockEntryCommand
from stock_ledger.errors import ValidationError


@pytest.fixture
def ledger(seeded_context, set_fixed_datetime):
    """Seeded context holding three entries.

    #1 2025-03-01 Acme, P1 x2 + P2 x3 for 50 (derived cost 10)
    #2 2025-03-05 12:00 Northern Foods, P3 x1 at 10, tax-inclusive 11.80
    #3 2025-03-05 12:00 no supplier, P1 x1 for 5
    """

    set_fixed_datetime(datetime(2025, 3, 1, 10, 0, tzinfo=UTC))
    core_logic.create_stock_entry(
        seeded_context,
        StockEntryCommand(
            amount_paid=Decimal("50"),
            lines=(LineRequest("P1", Decimal("2")), LineRequest("P2", Decimal("3"))),
            supplier_id="S1",
        ),
    )
    set_fixed_datetime(datetime(2025, 3, 5, 12, 0, tzinfo=UTC))
    core_logic.create_stock_entry(
        seeded_context,
        StockEntryCommand(
            amount_paid=Decimal("11.80"),
            lines=(LineRequest("P3", Decimal("1"), Decimal("10")),),
            supplier_id="S2",
            tax_inclusive=True,
        ),
    )
    core_logic.create_stock_entry(
        seeded_context,
        StockEntryCommand(amount_paid=Decimal("5"), lines=(LineRequest("P1", Decimal("1")),)),
    )
    return seeded_context


def _numbers(page):
    return [item.entry_number for item in page.items]


# ---------------------------------------------------------------------------
# list_entries
# ---------------------------------------------------------------------------


def test_list_entries_orders_newest_first_with_number_tie_break(ledger):
    page = queries.list_entries(ledger)

    assert _numbers(page) == [3, 2, 1]
    assert page.limit == ledger.settings.page_size
    assert page.total == 3
    assert page.filters == {}


def test_list_entries_carries_line_totals_and_supplier(ledger):
    page = queries.list_entries(ledger)
    first = page.items[-1]

    assert first.line_count == 2
    assert first.total_quantity == Decimal("5")
    assert first.supplier_name == "Acme Wholesale"
    assert page.items[0].supplier_name is None


@pytest.mark.parametrize(
    ("search", "expected"),
    [("acme", [1]), ("  NORTHERN ", [2]), ("98765", [2]), ("a", [3, 2, 1]), ("", [3, 2, 1])],
)
def test_list_entries_search(ledger, search, expected):
    """Search matches supplier name or document and ignores one-character terms."""

    page = queries.list_entries(ledger, queries.EntryQuery(search=search))

    assert _numbers(page) == expected


def test_list_entries_reports_applied_filters(ledger):
    page = queries.list_entries(ledger, queries.EntryQuery(search=" acme ", supplier_id="S1", tax_inclusive=False))

    assert _numbers(page) == [1]
    assert page.filters == {"search": "acme", "supplier_id": "S1", "tax_inclusive": False}


def test_list_entries_date_range_is_inclusive(ledger):
    assert _numbers(queries.list_entries(ledger, queries.EntryQuery(date_from="2025-03-05"))) == [3, 2]
    assert _numbers(queries.list_entries(ledger, queries.EntryQuery(date_to=date(2025, 3, 1)))) == [1]
    assert _numbers(
        queries.list_entries(ledger, queries.EntryQuery(date_from="2025-03-02", date_to="2025-03-04"))
    ) == []


def test_list_entries_tax_inclusive_filter(ledger):
    assert _numbers(queries.list_entries(ledger, queries.EntryQuery(tax_inclusive=True))) == [2]
    assert _numbers(queries.list_entries(ledger, queries.EntryQuery(tax_inclusive=False))) == [3, 1]


def test_list_entries_rejects_malformed_dates(ledger):
    with pytest.raises(ValidationError) as excinfo:
        queries.list_entries(ledger, queries.EntryQuery(date_from="05/03/2025"))

    assert excinfo.value.field == "date_from"


def test_list_entries_paginates_with_clamped_limit(seeded_context):
    for _ in range(7):
        core_logic.create_stock_entry(
            seeded_context,
            StockEntryCommand(amount_paid=Decimal("1"), lines=(LineRequest("P1", Decimal("1")),)),
        )

    first = queries.list_entries(seeded_context, queries.EntryQuery(page=1, limit=1))
    second = queries.list_entries(seeded_context, queries.EntryQuery(page="2", limit="1"))

    assert first.limit == 5
    assert len(first.items) == 5
    assert first.has_next is True
    assert first.has_prev is False
    assert second.pagination() == {
        "page": 2,
        "limit": 5,
        "total": 7,
        "total_pages": 2,
        "has_next": False,
        "has_prev": True,
    }
    assert len(second.items) == 2


# ---------------------------------------------------------------------------
# get_entry
# ---------------------------------------------------------------------------


def test_get_entry_returns_lines_with_current_stock(ledger):
    entry = queries.get_entry(ledger, 1)

    assert entry.supplier_name == "Acme Wholesale"
    assert entry.subtotal == Decimal("50")
    assert [line.product_code for line in entry.lines] == ["P1", "P2"]
    assert [line.unit_cost for line in entry.lines] == [Decimal("10"), Decimal("10")]
    assert entry.lines[0].stock_balance == Decimal("3")
    assert entry.lines[0].stock_before is None
    assert entry.to_dict()["line_count"] == 2


def test_get_entry_missing_raises(ledger):
    with pytest.raises(KeyError):
        queries.get_entry(ledger, 99)


def test_get_entry_recomputes_subtotal_and_logs_mismatch(ledger, config_file, caplog):
    workbook = data_manager.open_workbook(ledger.store.data_file)
    sheet = workbook[data_manager.ENTRIES_SHEET]
    column = data_manager.SHEET_COLUMNS[data_manager.ENTRIES_SHEET].index("Subtotal") + 1
    sheet.cell(row=2, column=column).value = "999"
    data_manager.save_workbook(workbook, ledger.store.data_file)
    fresh = core_logic.load_runtime_context(config_file)

    with caplog.at_level("WARNING", logger="stock_ledger"):
        entry = queries.get_entry(fresh, 1)

    assert entry.subtotal == Decimal("50")
    assert "differs from its lines" in caplog.text


# ---------------------------------------------------------------------------
# summarize_entries
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(("raw", "expected"), [(None, 30), (0, 30), ("7", 7), (-5, 1), (1000, 365), ("x", 30)])
def test_clamp_days(raw, expected):
    assert queries.clamp_days(raw) == expected


def test_summarize_entries_trailing_window(ledger):
    stats = queries.summarize_entries(ledger, days=7, today=date(2025, 3, 10))

    assert stats.days == 7
    assert stats.total_entries == 2
    assert stats.total_paid == Decimal("16.80")
    assert stats.average_paid == Decimal("8.4")
    assert stats.entries_with_tax == 1
    assert stats.distinct_suppliers == 1
    assert stats.total_lines == 2
    assert stats.total_quantity == Decimal("2")


def test_summarize_entries_whole_ledger(ledger):
    stats = queries.summarize_entries(ledger, days=30, today=date(2025, 3, 10))

    assert stats.total_entries == 3
    assert stats.total_paid == Decimal("66.80")
    assert stats.distinct_suppliers == 2
    assert stats.total_lines == 4
    assert stats.total_quantity == Decimal("7")
    assert stats.to_dict()["total_paid"] == "66.80"


def test_summarize_entries_empty_ledger(runtime_context):
    stats = queries.summarize_entries(runtime_context)

    assert stats.total_entries == 0
    assert stats.average_paid == Decimal("0")
