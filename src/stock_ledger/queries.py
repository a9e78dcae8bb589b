"""Read side of the stock ledger: listings, single entries and summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from . import data_manager, log
from .constants import DEFAULT_SUMMARY_DAYS, MAX_SUMMARY_DAYS, MIN_SEARCH_LENGTH, MONEY_TOLERANCE
from .core_logic import (
    ResolvedEntry,
    ResolvedLine,
    RuntimeContext,
    find_entry,
    list_products,
    list_suppliers,
    load_entries,
    load_lines_by_entry,
)
from .errors import ValidationError
from .filters import Page, PageRequest, QueryBuilder

ENTRY_FILTERS = frozenset({"search", "supplier_id", "date_from", "date_to", "tax_inclusive"})

DateLike = Union[date, datetime, str, None]


@dataclass(frozen=True)
class EntryQuery:
    """Loosely typed listing parameters, normalized by :func:`list_entries`."""

    page: Any = 1
    limit: Any = None
    search: Optional[str] = None
    supplier_id: Optional[str] = None
    date_from: DateLike = None
    date_to: DateLike = None
    tax_inclusive: Optional[bool] = None


@dataclass(frozen=True)
class EntrySummary:
    """One row of the ledger listing."""

    entry_number: int
    timestamp: datetime
    supplier_id: Optional[str]
    supplier_name: Optional[str]
    supplier_document: Optional[str]
    subtotal: Decimal
    tax_amount: Decimal
    amount_paid: Decimal
    tax_inclusive: bool
    notes: Optional[str]
    user_id: Optional[str]
    line_count: int
    total_quantity: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_number": self.entry_number,
            "timestamp": self.timestamp.isoformat(),
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "supplier_document": self.supplier_document,
            "subtotal": str(self.subtotal),
            "tax_amount": str(self.tax_amount),
            "amount_paid": str(self.amount_paid),
            "tax_inclusive": self.tax_inclusive,
            "notes": self.notes,
            "user_id": self.user_id,
            "line_count": self.line_count,
            "total_quantity": str(self.total_quantity),
        }


@dataclass(frozen=True)
class EntryStats:
    """Aggregates over the entries of a trailing window of days."""

    days: int
    total_entries: int
    total_paid: Decimal
    average_paid: Decimal
    entries_with_tax: int
    distinct_suppliers: int
    total_lines: int
    total_quantity: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days": self.days,
            "total_entries": self.total_entries,
            "total_paid": str(self.total_paid),
            "average_paid": str(self.average_paid),
            "entries_with_tax": self.entries_with_tax,
            "distinct_suppliers": self.distinct_suppliers,
            "total_lines": self.total_lines,
            "total_quantity": str(self.total_quantity),
        }


def _today() -> date:
    return datetime.now(UTC).date()


def _parse_timestamp(raw: str) -> datetime:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _coerce_date(raw: DateLike, *, field: str) -> Optional[date]:
    """Normalize a date filter value.

    Raises:
        ValidationError: If a string value is not an ISO date.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.astimezone(UTC).date() if raw.tzinfo else raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError as exc:
        log.warning("Invalid date filter %s=%r", field, raw)
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", field=field) from exc


def _summarize(
    entry: data_manager.EntryRow,
    suppliers: Dict[str, data_manager.SupplierRow],
    totals: Dict[int, tuple],
) -> EntrySummary:
    supplier = suppliers.get(entry.supplier_id) if entry.supplier_id else None
    line_count, total_quantity = totals.get(entry.entry_number, (0, Decimal("0")))
    return EntrySummary(
        entry_number=entry.entry_number,
        timestamp=_parse_timestamp(entry.timestamp_iso),
        supplier_id=entry.supplier_id,
        supplier_name=supplier.supplier_name if supplier is not None else None,
        supplier_document=supplier.document if supplier is not None else None,
        subtotal=entry.subtotal,
        tax_amount=entry.tax_amount,
        amount_paid=entry.amount_paid,
        tax_inclusive=entry.tax_inclusive,
        notes=entry.notes,
        user_id=entry.user_id,
        line_count=line_count,
        total_quantity=total_quantity,
    )


def _line_totals(lines_by_entry: Dict[int, List[data_manager.LineRow]]) -> Dict[int, tuple]:
    return {
        number: (len(lines), sum((line.quantity for line in lines), Decimal("0")))
        for number, lines in lines_by_entry.items()
    }


def build_entry_query(query: EntryQuery) -> QueryBuilder[EntrySummary]:
    """Translate an :class:`EntryQuery` into a configured query builder.

    Search terms shorter than ``MIN_SEARCH_LENGTH`` after trimming are
    ignored. Date bounds are inclusive and compare against the UTC date of
    each entry.
    """
    builder: QueryBuilder[EntrySummary] = QueryBuilder(ENTRY_FILTERS)

    term = (query.search or "").strip()
    if len(term) >= MIN_SEARCH_LENGTH:
        needle = term.lower()
        builder.where(
            "search",
            term,
            lambda row: needle in str(row.entry_number)
            or needle in (row.supplier_name or "").lower()
            or needle in (row.supplier_document or "").lower(),
        )

    supplier_id = (query.supplier_id or "").strip()
    if supplier_id:
        builder.where("supplier_id", supplier_id, lambda row: row.supplier_id == supplier_id)

    date_from = _coerce_date(query.date_from, field="date_from")
    if date_from is not None:
        builder.where("date_from", date_from.isoformat(), lambda row: row.timestamp.astimezone(UTC).date() >= date_from)

    date_to = _coerce_date(query.date_to, field="date_to")
    if date_to is not None:
        builder.where("date_to", date_to.isoformat(), lambda row: row.timestamp.astimezone(UTC).date() <= date_to)

    if query.tax_inclusive is not None:
        flag = bool(query.tax_inclusive)
        builder.where("tax_inclusive", flag, lambda row: row.tax_inclusive is flag)

    builder.order_by(lambda row: (row.timestamp, row.entry_number), descending=True)
    return builder


def list_entries(context: RuntimeContext, query: Optional[EntryQuery] = None) -> Page[EntrySummary]:
    """Return one page of ledger entries, newest first.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        query (EntryQuery | None): Filters and paging; defaults to the first
            page with the configured page size.

    Returns:
        Page[EntrySummary]: Entries with their line count and total quantity,
            pagination metadata and the filters that were applied.

    Raises:
        ValidationError: If a date filter cannot be parsed.
    """
    query = query or EntryQuery()
    request = PageRequest.from_raw(query.page, query.limit, default_limit=context.settings.page_size)
    builder = build_entry_query(query)

    suppliers = {supplier.supplier_id: supplier for supplier in list_suppliers(context)}
    totals = _line_totals(load_lines_by_entry(context))
    rows = [_summarize(entry, suppliers, totals) for entry in load_entries(context)]

    page = builder.execute(rows, request)
    log.debug(
        "Listed %d of %d entries (page %d, filters=%s)",
        len(page.items),
        page.total,
        page.page,
        page.filters,
    )
    return page


def get_entry(context: RuntimeContext, entry_number: int) -> ResolvedEntry:
    """Return one entry with its lines and the current stock of each product.

    The subtotal is recomputed from the lines; a stored value that disagrees
    beyond ``MONEY_TOLERANCE`` is logged and the recomputed value wins.

    Raises:
        KeyError: If no entry carries ``entry_number``.
    """
    entry = find_entry(context, entry_number)
    if entry is None:
        log.warning("Stock entry #%s not found", entry_number)
        raise KeyError(f"Stock entry not found: {entry_number}")

    products = {product.product_code: product for product in list_products(context, include_inactive=True)}
    suppliers = {supplier.supplier_id: supplier for supplier in list_suppliers(context)}
    stored_lines = load_lines_by_entry(context).get(entry.entry_number, [])

    lines = []
    for line in stored_lines:
        product = products.get(line.product_code)
        lines.append(
            ResolvedLine(
                line_number=line.line_number,
                product_code=line.product_code,
                description=product.description if product is not None else "",
                unit=product.unit if product is not None else None,
                quantity=line.quantity,
                unit_cost=line.unit_cost,
                cost_derived=line.cost_derived,
                stock_balance=product.stock_balance if product is not None else Decimal("0"),
            )
        )

    subtotal = sum((line.subtotal for line in lines), Decimal("0"))
    if abs(subtotal - entry.subtotal) > MONEY_TOLERANCE:
        log.warning(
            "Stock entry #%d stored subtotal %s differs from its lines (%s)",
            entry.entry_number,
            entry.subtotal,
            subtotal,
        )

    supplier = suppliers.get(entry.supplier_id) if entry.supplier_id else None
    return ResolvedEntry(
        entry_number=entry.entry_number,
        timestamp=_parse_timestamp(entry.timestamp_iso),
        supplier_id=entry.supplier_id,
        supplier_name=supplier.supplier_name if supplier is not None else None,
        supplier_document=supplier.document if supplier is not None else None,
        subtotal=subtotal,
        tax_amount=entry.tax_amount,
        amount_paid=entry.amount_paid,
        tax_inclusive=entry.tax_inclusive,
        notes=entry.notes,
        user_id=entry.user_id,
        lines=tuple(lines),
    )


def clamp_days(days: Any) -> int:
    """Clamp a day count to ``1..MAX_SUMMARY_DAYS``; unparseable values use the default."""
    try:
        value = int(days)
    except (TypeError, ValueError):
        value = 0
    return min(MAX_SUMMARY_DAYS, max(1, value or DEFAULT_SUMMARY_DAYS))


def summarize_entries(context: RuntimeContext, *, days: Any = DEFAULT_SUMMARY_DAYS, today: Optional[date] = None) -> EntryStats:
    """Aggregate the entries recorded in the trailing ``days`` days.

    An entry is inside the window when its UTC date is on or after
    ``today - days``.
    """
    window = clamp_days(days)
    start = (today or _today()) - timedelta(days=window)

    lines_by_entry = load_lines_by_entry(context)
    selected = [
        entry
        for entry in load_entries(context)
        if _parse_timestamp(entry.timestamp_iso).astimezone(UTC).date() >= start
    ]

    total_paid = sum((entry.amount_paid for entry in selected), Decimal("0"))
    total_lines = 0
    total_quantity = Decimal("0")
    for entry in selected:
        for line in lines_by_entry.get(entry.entry_number, []):
            total_lines += 1
            total_quantity += line.quantity

    stats = EntryStats(
        days=window,
        total_entries=len(selected),
        total_paid=total_paid,
        average_paid=total_paid / len(selected) if selected else Decimal("0"),
        entries_with_tax=sum(1 for entry in selected if entry.tax_inclusive),
        distinct_suppliers=len({entry.supplier_id for entry in selected if entry.supplier_id}),
        total_lines=total_lines,
        total_quantity=total_quantity,
    )
    log.debug("Summarized %d entries over the last %d days", stats.total_entries, window)
    return stats
