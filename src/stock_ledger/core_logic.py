"""Business logic layer for the stock ledger.

This module owns the entry-creation pipeline: every request is validated,
checked against the product and supplier directory, priced, and finally
written as one all-or-nothing workbook transaction that also increments the
stock balance of every product it touches. It consumes the Data Access Layer
(DAL) for all I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ActivityAction, ActivityCategory, EntryState
from .errors import BusinessRuleViolation, LedgerError, MissingReferenceError, StorageError
from .pricing import PricingResult, resolve_unit_costs
from .tax import TaxAllocation, allocate_tax
from .validation import normalize_code, validate_entry


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the workbook store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.WorkbookStore
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class LineRequest:
    """One requested line: a product, a quantity and optionally its unit cost."""

    product_code: str
    quantity: Decimal
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class StockEntryCommand:
    """User intent for recording incoming stock."""

    amount_paid: Decimal
    lines: Sequence[LineRequest]
    tax_inclusive: bool = False
    supplier_id: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ResolvedLine:
    """A stored line with its resolved cost and the product's stock balance.

    ``stock_before`` is only known when the line was just written; on reads
    ``stock_balance`` is the product's current balance.
    """

    line_number: int
    product_code: str
    description: str
    unit: Optional[str]
    quantity: Decimal
    unit_cost: Decimal
    cost_derived: bool
    stock_balance: Decimal
    stock_before: Optional[Decimal] = None

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_number": self.line_number,
            "product_code": self.product_code,
            "description": self.description,
            "unit": self.unit,
            "quantity": str(self.quantity),
            "unit_cost": str(self.unit_cost),
            "cost_derived": self.cost_derived,
            "subtotal": str(self.subtotal),
            "stock_before": str(self.stock_before) if self.stock_before is not None else None,
            "stock_balance": str(self.stock_balance),
        }


@dataclass(frozen=True)
class ResolvedEntry:
    """A fully materialized entry: header, resolved lines and stock balances."""

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
    lines: Tuple[ResolvedLine, ...]

    @property
    def line_count(self) -> int:
        return len(self.lines)

    @property
    def total_quantity(self) -> Decimal:
        return sum((line.quantity for line in self.lines), Decimal("0"))

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
            "lines": [line.to_dict() for line in self.lines],
        }


def _now() -> datetime:
    """Return the current UTC time used for server-assigned timestamps."""

    return datetime.now(UTC)


def _transition(current: EntryState, target: EntryState) -> EntryState:
    log.debug("Stock entry request %s -> %s", current.value, target.value)
    return target


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries holding precomputed query results so
    repeated lookups do not rescan the workbook. They are rebuilt after every
    store transaction.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the workbook changed or was rolled back."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    with context.store.reading():
        for name in names:
            context._cache.pop(name, None)


def _invalidate_all(context: RuntimeContext) -> None:
    _invalidate_cache(context, "products", "suppliers", "entries", "lines")


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, ``active``
            products, and a ``by_code`` lookup dictionary.
    """

    with context.store.reading() as workbook:
        bucket = _get_cache_bucket(context, "products")
        if "all" not in bucket:
            all_products = list(data_manager.iter_products(workbook))
            bucket["all"] = all_products
            bucket["active"] = [product for product in all_products if product.is_active]
            bucket["by_code"] = {product.product_code: product for product in all_products}
            log.debug(
                "Populated products cache with %d entries (%d active)",
                len(all_products),
                len(bucket["active"]),
            )
        return bucket


def _ensure_suppliers_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context.store.reading() as workbook:
        bucket = _get_cache_bucket(context, "suppliers")
        if "all" not in bucket:
            all_suppliers = list(data_manager.iter_suppliers(workbook))
            bucket["all"] = all_suppliers
            bucket["by_id"] = {supplier.supplier_id: supplier for supplier in all_suppliers}
            log.debug("Populated suppliers cache with %d entries", len(all_suppliers))
        return bucket


def _ensure_entries_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the entry header cache bucket on demand.

    Entries are immutable after creation, so the cached list and the
    ``by_number`` index stay valid until the next store transaction.
    """

    with context.store.reading() as workbook:
        bucket = _get_cache_bucket(context, "entries")
        if "all" not in bucket:
            all_entries = list(data_manager.iter_entries(workbook))
            bucket["all"] = all_entries
            bucket["by_number"] = {entry.entry_number: entry for entry in all_entries}
            log.debug("Populated entries cache with %d entries", len(all_entries))
        return bucket


def _ensure_lines_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context.store.reading() as workbook:
        bucket = _get_cache_bucket(context, "lines")
        if "by_entry" not in bucket:
            by_entry: Dict[int, List[data_manager.LineRow]] = {}
            for line in data_manager.iter_lines(workbook):
                by_entry.setdefault(line.entry_number, []).append(line)
            for lines in by_entry.values():
                lines.sort(key=lambda line: line.line_number)
            bucket["by_entry"] = by_entry
            log.debug("Populated lines cache for %d entries", len(by_entry))
        return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return product rows in sheet order, active ones only by default."""
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def list_suppliers(context: RuntimeContext) -> List[data_manager.SupplierRow]:
    return list(_ensure_suppliers_cache(context)["all"])


def load_entries(context: RuntimeContext) -> List[data_manager.EntryRow]:
    """Return every entry header in sheet order."""
    return list(_ensure_entries_cache(context)["all"])


def load_lines_by_entry(context: RuntimeContext) -> Dict[int, List[data_manager.LineRow]]:
    """Return stored lines grouped by entry number, ordered by line number."""
    return _ensure_lines_cache(context)["by_entry"]


def find_entry(context: RuntimeContext, entry_number: int) -> Optional[data_manager.EntryRow]:
    return _ensure_entries_cache(context)["by_number"].get(entry_number)


def get_product(context: RuntimeContext, product_code: str) -> data_manager.ProductRow:
    """Resolve a product record by its code.

    Raises:
        MissingReferenceError: If ``product_code`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_code"][product_code]
    except KeyError as exc:
        log.warning("Product lookup failed for code '%s'", product_code)
        raise MissingReferenceError(f"Unknown product code: {product_code}", missing_products=[product_code]) from exc


def get_supplier(context: RuntimeContext, supplier_id: str) -> data_manager.SupplierRow:
    """Resolve a supplier record by its identifier.

    Raises:
        MissingReferenceError: If ``supplier_id`` cannot be located.
    """
    cache = _ensure_suppliers_cache(context)
    try:
        return cache["by_id"][supplier_id]
    except KeyError as exc:
        log.warning("Supplier lookup failed for id '%s'", supplier_id)
        raise MissingReferenceError(f"Unknown supplier id: {supplier_id}", missing_supplier=supplier_id) from exc


def stock_balances(context: RuntimeContext, *, include_inactive: bool = False) -> Dict[str, Decimal]:
    """Map each product code to its current stock balance."""
    return {product.product_code: product.stock_balance for product in list_products(context, include_inactive=include_inactive)}


def add_product(
    context: RuntimeContext,
    *,
    product_code: str,
    description: str,
    unit: Optional[str] = None,
    is_active: bool = True,
    user_id: Optional[str] = None,
) -> data_manager.ProductRow:
    """Register a product with a zero stock balance.

    Raises:
        BusinessRuleViolation: If the code or description is blank, or the
            code is already registered.
    """
    code = normalize_code(product_code)
    if not code or not (description or "").strip():
        raise BusinessRuleViolation("Product code and description are required")
    if code in _ensure_products_cache(context)["by_code"]:
        log.warning("Attempted to register duplicate product '%s'", code)
        raise BusinessRuleViolation(f"Product '{code}' already exists")

    record = data_manager.ProductRow(
        product_code=code,
        description=description.strip(),
        unit=unit,
        stock_balance=Decimal("0"),
        is_active=is_active,
    )
    try:
        with context.store.transaction() as workbook:
            data_manager.append_product(workbook, record)
            data_manager.append_activity(
                workbook,
                build_activity_row(
                    action=ActivityAction.PRODUCT_CREATE,
                    category=ActivityCategory.INVENTORY,
                    description=f"Product {code} - {record.description}",
                    user_id=user_id or context.settings.default_user_id,
                    timestamp=_now(),
                ),
            )
    finally:
        _invalidate_all(context)
    log.info("Registered product '%s' (active=%s)", code, is_active)
    return record


def add_supplier(
    context: RuntimeContext,
    *,
    supplier_id: str,
    supplier_name: str,
    document: Optional[str] = None,
    supplier_type: Optional[str] = None,
    user_id: Optional[str] = None,
) -> data_manager.SupplierRow:
    """Register a supplier that entries may reference.

    Raises:
        BusinessRuleViolation: If the id or name is blank, or the id is
            already registered.
    """
    identifier = normalize_code(supplier_id)
    if not identifier or not (supplier_name or "").strip():
        raise BusinessRuleViolation("Supplier id and name are required")
    if identifier in _ensure_suppliers_cache(context)["by_id"]:
        log.warning("Attempted to register duplicate supplier '%s'", identifier)
        raise BusinessRuleViolation(f"Supplier '{identifier}' already exists")

    record = data_manager.SupplierRow(
        supplier_id=identifier,
        supplier_name=supplier_name.strip(),
        document=document,
        supplier_type=supplier_type,
    )
    try:
        with context.store.transaction() as workbook:
            data_manager.append_supplier(workbook, record)
            data_manager.append_activity(
                workbook,
                build_activity_row(
                    action=ActivityAction.SUPPLIER_CREATE,
                    category=ActivityCategory.SUPPLIERS,
                    description=f"Supplier {identifier} - {record.supplier_name}",
                    user_id=user_id or context.settings.default_user_id,
                    timestamp=_now(),
                ),
            )
    finally:
        _invalidate_all(context)
    log.info("Registered supplier '%s'", identifier)
    return record


def check_references(
    context: RuntimeContext,
    command: StockEntryCommand,
) -> Tuple[Dict[str, data_manager.ProductRow], Optional[data_manager.SupplierRow]]:
    """Confirm every product exists and is active, and the supplier exists.

    All misses are collected before failing so the caller can fix the whole
    request in one go.

    Returns:
        tuple: Products keyed by code for the requested lines, and the
            supplier row (``None`` when the entry names no supplier).

    Raises:
        MissingReferenceError: Naming every unknown or inactive product code
            and the unknown supplier, if any.
    """
    products = _ensure_products_cache(context)["by_code"]
    suppliers = _ensure_suppliers_cache(context)["by_id"]

    found: Dict[str, data_manager.ProductRow] = {}
    missing: List[str] = []
    for line in command.lines:
        product = products.get(line.product_code)
        if product is None or not product.is_active:
            if line.product_code not in missing:
                missing.append(line.product_code)
            continue
        found[line.product_code] = product

    supplier = None
    missing_supplier = None
    if command.supplier_id is not None:
        supplier = suppliers.get(command.supplier_id)
        if supplier is None:
            missing_supplier = command.supplier_id

    if missing or missing_supplier:
        problems = []
        if missing:
            problems.append(f"products not found or inactive: {', '.join(missing)}")
        if missing_supplier:
            problems.append(f"supplier not found: {missing_supplier}")
        log.warning("Reference check failed: %s", "; ".join(problems))
        raise MissingReferenceError(
            "Reference check failed: " + "; ".join(problems),
            missing_products=missing,
            missing_supplier=missing_supplier,
            state=EntryState.REFERENCE_CHECK,
        )

    return found, supplier


def create_stock_entry(context: RuntimeContext, command: StockEntryCommand) -> ResolvedEntry:
    """Validate, price and atomically record a stock entry.

    The request moves through ``VALIDATING``, ``REFERENCE_CHECK``, ``PRICING``
    and ``PERSISTING``. Nothing is written before ``PERSISTING``; from there
    the header, its lines, the stock increments and the activity record share
    one store transaction, so either all of them become visible or none do.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (StockEntryCommand): The entry request.

    Returns:
        ResolvedEntry: The committed entry with resolved unit costs and each
            product's balance before and after the entry, read inside the same
            transaction.

    Raises:
        ValidationError: If the request is malformed.
        MissingReferenceError: If products or the supplier are unknown.
        PricingError: If open-line costs cannot be derived.
        TaxError: If a tax-inclusive payment is below the subtotal.
        StorageError: If the store transaction fails; nothing was kept.
    """
    state = EntryState.VALIDATING
    command = validate_entry(command)

    state = _transition(state, EntryState.REFERENCE_CHECK)
    products, supplier = check_references(context, command)

    state = _transition(state, EntryState.PRICING)
    pricing = resolve_unit_costs(command.lines, command.amount_paid)
    allocation = allocate_tax(pricing.lines, command.amount_paid, tax_inclusive=command.tax_inclusive)

    state = _transition(state, EntryState.PERSISTING)
    user_id = command.user_id or context.settings.default_user_id
    try:
        with context.store.transaction() as workbook:
            entry = _persist_entry(
                workbook,
                command=command,
                pricing=pricing,
                allocation=allocation,
                products=products,
                supplier=supplier,
                user_id=user_id,
            )
    except LedgerError as exc:
        _transition(state, EntryState.ROLLED_BACK)
        if exc.state is None:
            exc.state = EntryState.PERSISTING
        raise
    except Exception as exc:
        _transition(state, EntryState.ROLLED_BACK)
        log.error("Stock entry rolled back after storage failure: %s", exc)
        raise StorageError(f"Stock entry could not be stored: {exc}", state=EntryState.PERSISTING) from exc
    finally:
        _invalidate_all(context)

    _transition(state, EntryState.COMMITTED)
    log.info(
        "Recorded stock entry #%d with %d line(s) (subtotal=%s, tax=%s, paid=%s)",
        entry.entry_number,
        entry.line_count,
        entry.subtotal,
        entry.tax_amount,
        entry.amount_paid,
    )
    return entry


def _persist_entry(
    workbook: Any,
    *,
    command: StockEntryCommand,
    pricing: PricingResult,
    allocation: TaxAllocation,
    products: Dict[str, data_manager.ProductRow],
    supplier: Optional[data_manager.SupplierRow],
    user_id: Optional[str],
) -> ResolvedEntry:
    """Write header, lines, stock increments and audit row; caller holds the transaction."""
    entry_number = data_manager.next_entry_number(workbook)
    timestamp = _now()
    data_manager.append_entry(
        workbook,
        build_entry_row(
            command,
            allocation,
            entry_number=entry_number,
            timestamp=timestamp,
            user_id=user_id,
        ),
    )

    resolved: List[ResolvedLine] = []
    for line_number, line in enumerate(pricing.lines, start=1):
        data_manager.append_line(
            workbook,
            data_manager.LineRow(
                entry_number=entry_number,
                line_number=line_number,
                product_code=line.product_code,
                quantity=line.quantity,
                unit_cost=line.unit_cost,
                cost_derived=line.cost_derived,
            ),
        )
        balance = data_manager.increment_stock(workbook, line.product_code, line.quantity)
        product = products[line.product_code]
        resolved.append(
            ResolvedLine(
                line_number=line_number,
                product_code=line.product_code,
                description=product.description,
                unit=product.unit,
                quantity=line.quantity,
                unit_cost=line.unit_cost,
                cost_derived=line.cost_derived,
                stock_balance=balance,
                stock_before=balance - line.quantity,
            )
        )

    data_manager.append_activity(
        workbook,
        build_activity_row(
            action=ActivityAction.STOCK_ENTRY_CREATE,
            category=ActivityCategory.INVENTORY,
            description=describe_entry(entry_number, len(resolved), supplier, command.notes),
            user_id=user_id,
            timestamp=timestamp,
            amount=command.amount_paid,
        ),
    )

    return ResolvedEntry(
        entry_number=entry_number,
        timestamp=timestamp,
        supplier_id=supplier.supplier_id if supplier is not None else None,
        supplier_name=supplier.supplier_name if supplier is not None else None,
        supplier_document=supplier.document if supplier is not None else None,
        subtotal=allocation.subtotal,
        tax_amount=allocation.tax_amount,
        amount_paid=allocation.amount_paid,
        tax_inclusive=allocation.tax_inclusive,
        notes=command.notes,
        user_id=user_id,
        lines=tuple(resolved),
    )


def build_entry_row(
    command: StockEntryCommand,
    allocation: TaxAllocation,
    *,
    entry_number: int,
    timestamp: datetime,
    user_id: Optional[str],
) -> data_manager.EntryRow:
    """Materialize an entry header for the DAL."""
    return data_manager.EntryRow(
        entry_number=entry_number,
        timestamp_iso=timestamp.isoformat(),
        supplier_id=command.supplier_id,
        subtotal=allocation.subtotal,
        tax_amount=allocation.tax_amount,
        amount_paid=allocation.amount_paid,
        tax_inclusive=allocation.tax_inclusive,
        notes=command.notes,
        user_id=user_id,
    )


def build_activity_row(
    *,
    action: ActivityAction,
    category: ActivityCategory,
    description: str,
    user_id: Optional[str],
    timestamp: datetime,
    amount: Optional[Decimal] = None,
) -> data_manager.ActivityRow:
    return data_manager.ActivityRow(
        timestamp_iso=timestamp.isoformat(),
        user_id=user_id,
        action=action.value,
        category=category.value,
        description=description,
        amount=amount,
    )


def describe_entry(
    entry_number: int,
    line_count: int,
    supplier: Optional[data_manager.SupplierRow],
    notes: Optional[str],
) -> str:
    """Build the one-line audit description of an entry."""
    supplier_label = supplier.supplier_name if supplier is not None else "No supplier"
    description = f"Entry #{entry_number} - {line_count} product(s) - {supplier_label}"
    if notes:
        description += f" - {notes}"
    return description
