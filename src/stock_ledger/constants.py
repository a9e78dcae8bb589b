"""Enumerations and limits shared across the stock ledger modules.

Centralises domain constants so that the data access layer (DAL), the ledger
business logic and the CLI rely on a single source of truth for sheet names,
pipeline states and numeric limits.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Allowed drift between paid and resolved amounts once costs are derived.
MONEY_TOLERANCE = Decimal("0.005")

DEFAULT_PAGE_SIZE = 25
MIN_PAGE_SIZE = 5
MAX_PAGE_SIZE = 100
MIN_SEARCH_LENGTH = 2

DEFAULT_SUMMARY_DAYS = 30
MAX_SUMMARY_DAYS = 365


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SUPPLIERS = "Suppliers"
    STOCK_ENTRIES = "StockEntries"
    STOCK_LINES = "StockLines"
    ACTIVITY_LOG = "ActivityLog"


class EntryState(str, Enum):
    """Stages an entry-creation request moves through."""

    VALIDATING = "VALIDATING"
    REFERENCE_CHECK = "REFERENCE_CHECK"
    PRICING = "PRICING"
    PERSISTING = "PERSISTING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


class ActivityAction(str, Enum):
    """Actions recorded in the ``ActivityLog`` sheet."""

    PRODUCT_CREATE = "PRODUCT_CREATE"
    SUPPLIER_CREATE = "SUPPLIER_CREATE"
    STOCK_ENTRY_CREATE = "STOCK_ENTRY_CREATE"


class ActivityCategory(str, Enum):
    """Categories used to group activity records."""

    INVENTORY = "INVENTORY"
    SUPPLIERS = "SUPPLIERS"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_TOLERANCE",
    "DEFAULT_PAGE_SIZE",
    "MIN_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "MIN_SEARCH_LENGTH",
    "DEFAULT_SUMMARY_DAYS",
    "MAX_SUMMARY_DAYS",
    "SheetName",
    "EntryState",
    "ActivityAction",
    "ActivityCategory",
]
