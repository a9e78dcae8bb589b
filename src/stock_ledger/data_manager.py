"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting and reloading the Excel file, and
   the :class:`WorkbookStore` that turns those primitives into serialized,
   all-or-nothing transactions.
3. Sheet operations: loading structured records, appending rows, and the
   explicit ``increment_stock`` balance update.
"""


from __future__ import annotations

import configparser
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_PAGE_SIZE, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SUPPLIERS_SHEET = SheetName.SUPPLIERS.value
ENTRIES_SHEET = SheetName.STOCK_ENTRIES.value
LINES_SHEET = SheetName.STOCK_LINES.value
ACTIVITY_SHEET = SheetName.ACTIVITY_LOG.value

# Column layout of every sheet, in worksheet order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: ["ProductCode", "Description", "Unit", "StockBalance", "IsActive"],
    SUPPLIERS_SHEET: ["SupplierID", "SupplierName", "Document", "SupplierType"],
    ENTRIES_SHEET: [
        "EntryNumber",
        "Timestamp",
        "SupplierID",
        "Subtotal",
        "TaxAmount",
        "AmountPaid",
        "TaxInclusive",
        "Notes",
        "UserID",
    ],
    LINES_SHEET: ["EntryNumber", "LineNumber", "ProductCode", "Quantity", "UnitCost", "CostDerived"],
    ACTIVITY_SHEET: ["Timestamp", "UserID", "Action", "Category", "Description", "Amount"],
}

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_user_id: str
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_code: str
    description: str
    unit: Optional[str]
    stock_balance: Decimal
    is_active: bool


@dataclass(frozen=True)
class SupplierRow:
    """In-memory view of a row from the ``Suppliers`` sheet."""

    supplier_id: str
    supplier_name: str
    document: Optional[str]
    supplier_type: Optional[str]


@dataclass(frozen=True)
class EntryRow:
    """In-memory view of a row from the ``StockEntries`` sheet."""

    entry_number: int
    timestamp_iso: str
    supplier_id: Optional[str]
    subtotal: Decimal
    tax_amount: Decimal
    amount_paid: Decimal
    tax_inclusive: bool
    notes: Optional[str]
    user_id: Optional[str]


@dataclass(frozen=True)
class LineRow:
    """In-memory view of a row from the ``StockLines`` sheet."""

    entry_number: int
    line_number: int
    product_code: str
    quantity: Decimal
    unit_cost: Decimal
    cost_derived: bool

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True)
class ActivityRow:
    """In-memory view of a row from the ``ActivityLog`` sheet."""

    timestamp_iso: str
    user_id: Optional[str]
    action: str
    category: str
    description: str
    amount: Optional[Decimal]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. User home references (``~``) are expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Required entries are validated by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` (or the
    current working directory) and resolved to an absolute path. ``PageSize``
    under ``[Defaults]`` is optional.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``PageSize`` is not an integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    page_size = parser.getint("Defaults", "PageSize", fallback=DEFAULT_PAGE_SIZE)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_user_id=default_user,
        page_size=page_size,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is first written to a sibling temporary file which then
    replaces ``destination``, so a failed save never leaves a truncated file
    behind. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.name}.tmp")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


class WorkbookStore:
    """Serialized, all-or-nothing access to the workbook backing the ledger.

    The store owns the live workbook handle and a re-entrant lock. Every read
    and every transaction runs under that lock, which serializes concurrent
    writers: sequence numbers and stock increments computed inside
    :meth:`transaction` can never interleave with another writer.

    A transaction commits by saving the workbook to disk. Any exception raised
    inside the ``with`` block (or by the save itself) discards the in-memory
    workbook and reloads the last committed file, so partial writes are never
    observable.
    """

    def __init__(self, data_file: Path, workbook: Optional[Workbook] = None) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self._workbook: Optional[Workbook] = workbook if workbook is not None else open_workbook(self.data_file)
        self._lock = threading.RLock()

    def _current(self) -> Workbook:
        """Return the live workbook, reopening it after a failed rollback."""
        if self._workbook is None:
            log.info("Reopening workbook '%s' after a failed rollback", self.data_file)
            self._workbook = open_workbook(self.data_file)
        return self._workbook

    @property
    def workbook(self) -> Workbook:
        with self._lock:
            return self._current()

    @contextmanager
    def reading(self) -> Iterator[Workbook]:
        """Yield the workbook while holding the store lock."""
        with self._lock:
            yield self._current()

    @contextmanager
    def transaction(self) -> Iterator[Workbook]:
        """Yield the workbook for writing; commit on success, roll back on error.

        When the rollback cannot reload the file, the in-memory workbook is
        dropped and the next access reopens it from disk; the reload error is
        raised chained to the original failure.
        """
        with self._lock:
            workbook = self._current()
            try:
                yield workbook
                save_workbook(workbook, self.data_file)
            except BaseException as exc:
                log.warning("Rolling back workbook '%s' to its last committed state", self.data_file)
                try:
                    self._workbook = refresh_workbook(self.data_file)
                except Exception as reload_exc:
                    self._workbook = None
                    log.error("Could not reload workbook '%s' during rollback: %s", self.data_file, reload_exc)
                    raise reload_exc from exc
                raise
            log.debug("Committed workbook '%s'", self.data_file)


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    """Convert a worksheet value into a :class:`~decimal.Decimal`."""
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal value in workbook: {raw!r}") from exc


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _decimal_cell(value: Optional[Decimal]) -> Optional[str]:
    """Render decimals as text so the workbook keeps their exact value."""
    return None if value is None else str(value)


def _header_map(sheet: Any) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _iter_sheet(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    return _iter_sheet(workbook, PRODUCTS_SHEET, deserialize_product)


def iter_suppliers(workbook: Workbook) -> Iterable[SupplierRow]:
    """Iterate over supplier records stored on the ``Suppliers`` worksheet."""

    return _iter_sheet(workbook, SUPPLIERS_SHEET, deserialize_supplier)


def iter_entries(workbook: Workbook) -> Iterable[EntryRow]:
    """Stream entry headers from the ``StockEntries`` worksheet in sheet order."""

    return _iter_sheet(workbook, ENTRIES_SHEET, deserialize_entry)


def iter_lines(workbook: Workbook) -> Iterable[LineRow]:
    """Stream entry lines from the ``StockLines`` worksheet in sheet order."""

    return _iter_sheet(workbook, LINES_SHEET, deserialize_line)


def iter_activity(workbook: Workbook) -> Iterable[ActivityRow]:
    """Stream audit records from the ``ActivityLog`` worksheet."""

    return _iter_sheet(workbook, ACTIVITY_SHEET, deserialize_activity)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_supplier(workbook: Workbook, record: SupplierRow) -> None:
    """Append a supplier record to the ``Suppliers`` worksheet."""

    workbook[SUPPLIERS_SHEET].append(serialize_supplier(record))


def append_entry(workbook: Workbook, record: EntryRow) -> None:
    """Append an entry header to the ``StockEntries`` worksheet.

    Callers are expected to hold a :meth:`WorkbookStore.transaction` so the
    header and its lines are committed or discarded together.
    """

    workbook[ENTRIES_SHEET].append(serialize_entry(record))


def append_line(workbook: Workbook, record: LineRow) -> None:
    """Append an entry line to the ``StockLines`` worksheet."""

    workbook[LINES_SHEET].append(serialize_line(record))


def append_activity(workbook: Workbook, record: ActivityRow) -> None:
    """Append an audit record to the ``ActivityLog`` worksheet."""

    workbook[ACTIVITY_SHEET].append(serialize_activity(record))


def increment_stock(workbook: Workbook, product_code: str, delta: Decimal) -> Decimal:
    """Add ``delta`` to a product's stock balance and return the new balance.

    This is the only write path for stock balances. It must run inside a
    :meth:`WorkbookStore.transaction`: the store lock makes the
    read-modify-write of the balance cell atomic with respect to other
    writers, and a rollback discards the change together with the rest of
    the transaction.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_code (str): Code of the product whose balance changes.
        delta (Decimal): Signed quantity to add.

    Returns:
        Decimal: The balance after the increment.

    Raises:
        KeyError: If the product cannot be found.
        ValueError: If the resulting balance would be negative.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductCode", product_code)
    if row_index is None:
        raise KeyError(f"Product not found: {product_code}")

    sheet = workbook[PRODUCTS_SHEET]
    cell = sheet.cell(row=row_index, column=_header_map(sheet)["StockBalance"])
    balance = _to_decimal(cell.value) + delta
    if balance < Decimal("0"):
        raise ValueError(f"Stock balance for '{product_code}' cannot become negative")
    cell.value = _decimal_cell(balance)
    log.debug("Stock balance for '%s' changed by %s to %s", product_code, delta, balance)
    return balance


def next_entry_number(workbook: Workbook) -> int:
    """Return the next free entry sequence number (1 for an empty ledger)."""

    sheet = workbook[ENTRIES_SHEET]
    column = _header_map(sheet)["EntryNumber"]
    highest = 0
    for (value,) in sheet.iter_rows(min_row=2, min_col=column, max_col=column, values_only=True):
        if value is not None:
            highest = max(highest, int(value))
    return highest + 1


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (object): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index of the first match, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    wanted = str(key_value)

    # Keys are compared as text; Excel keeps numeric-looking codes as numbers.
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == wanted:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[ProductCode, Description, Unit, StockBalance, IsActive]``."""

    return [
        record.product_code,
        record.description,
        record.unit,
        _decimal_cell(record.stock_balance),
        record.is_active,
    ]


def serialize_supplier(record: SupplierRow) -> list[object]:
    """Arrange a supplier as ``[SupplierID, SupplierName, Document, SupplierType]``."""

    return [record.supplier_id, record.supplier_name, record.document, record.supplier_type]


def serialize_entry(record: EntryRow) -> list[object]:
    """Convert an entry header into the ``StockEntries`` column order."""

    return [
        record.entry_number,
        record.timestamp_iso,
        record.supplier_id,
        _decimal_cell(record.subtotal),
        _decimal_cell(record.tax_amount),
        _decimal_cell(record.amount_paid),
        record.tax_inclusive,
        record.notes,
        record.user_id,
    ]


def serialize_line(record: LineRow) -> list[object]:
    """Convert an entry line into the ``StockLines`` column order."""

    return [
        record.entry_number,
        record.line_number,
        record.product_code,
        _decimal_cell(record.quantity),
        _decimal_cell(record.unit_cost),
        record.cost_derived,
    ]


def serialize_activity(record: ActivityRow) -> list[object]:
    return [
        record.timestamp_iso,
        record.user_id,
        record.action,
        record.category,
        record.description,
        _decimal_cell(record.amount),
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Codes and descriptions are coerced to ``str`` so values Excel interpreted
    as numbers still compare equal to the codes used in requests.
    """

    product_code, description, unit, balance_raw, is_active = raw_row[:5]
    return ProductRow(
        product_code=str(product_code),
        description=str(description) if description is not None else "",
        unit=_optional_str(unit),
        stock_balance=_to_decimal(balance_raw),
        is_active=_to_bool(is_active),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    supplier_id, supplier_name, document, supplier_type = raw_row[:4]
    return SupplierRow(
        supplier_id=str(supplier_id),
        supplier_name=str(supplier_name) if supplier_name is not None else "",
        document=_optional_str(document),
        supplier_type=_optional_str(supplier_type),
    )


def deserialize_entry(raw_row: Sequence[object]) -> EntryRow:
    """Convert a raw ``StockEntries`` row into an :class:`EntryRow`.

    Monetary columns become :class:`~decimal.Decimal` instances and optional
    text columns stay ``None`` when blank.
    """

    (
        entry_number,
        timestamp_iso,
        supplier_id,
        subtotal_raw,
        tax_raw,
        paid_raw,
        tax_inclusive,
        notes,
        user_id,
    ) = raw_row[:9]

    return EntryRow(
        entry_number=int(entry_number),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        supplier_id=_optional_str(supplier_id),
        subtotal=_to_decimal(subtotal_raw),
        tax_amount=_to_decimal(tax_raw),
        amount_paid=_to_decimal(paid_raw),
        tax_inclusive=_to_bool(tax_inclusive),
        notes=_optional_str(notes),
        user_id=_optional_str(user_id),
    )


def deserialize_line(raw_row: Sequence[object]) -> LineRow:
    entry_number, line_number, product_code, quantity_raw, cost_raw, cost_derived = raw_row[:6]
    return LineRow(
        entry_number=int(entry_number),
        line_number=int(line_number),
        product_code=str(product_code),
        quantity=_to_decimal(quantity_raw),
        unit_cost=_to_decimal(cost_raw),
        cost_derived=_to_bool(cost_derived),
    )


def deserialize_activity(raw_row: Sequence[object]) -> ActivityRow:
    timestamp_iso, user_id, action, category, description, amount_raw = raw_row[:6]
    return ActivityRow(
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        user_id=_optional_str(user_id),
        action=str(action),
        category=str(category),
        description=str(description) if description is not None else "",
        amount=_to_decimal(amount_raw) if amount_raw is not None else None,
    )
