"""Reusable filtering and pagination for list queries.

List operations declare which filters they accept up front; a
:class:`QueryBuilder` refuses anything else, applies the accepted predicates,
orders the rows and slices out the requested page. Callers never assemble
ad hoc filter chains.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Generic, Iterable, List, Optional, Tuple, TypeVar

from .constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, MIN_PAGE_SIZE

T = TypeVar("T")


def _coerce_int(raw: Any, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class PageRequest:
    """A validated page number and page size."""

    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_raw(cls, page: Any = None, limit: Any = None, *, default_limit: int = DEFAULT_PAGE_SIZE) -> "PageRequest":
        """Build a request from loosely typed input.

        Unparseable values fall back to the defaults; the page is at least 1
        and the limit is clamped to ``MIN_PAGE_SIZE``..``MAX_PAGE_SIZE``.
        """
        page_number = max(1, _coerce_int(page, 1) or 1)
        size = _coerce_int(limit, default_limit) or default_limit
        size = min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, size))
        return cls(page=page_number, limit=size)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results plus pagination metadata."""

    items: List[T]
    page: int
    limit: int
    total: int
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def pagination(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }


class QueryBuilder(Generic[T]):
    """Compose whitelisted filters, a fixed ordering and pagination over rows.

    Example::

        builder = QueryBuilder(allowed_filters={"supplier_id"})
        builder.where("supplier_id", "S1", lambda row: row.supplier_id == "S1")
        builder.order_by(lambda row: row.entry_number, descending=True)
        page = builder.execute(rows, PageRequest(page=1, limit=25))
    """

    def __init__(self, allowed_filters: Iterable[str]) -> None:
        self.allowed_filters: FrozenSet[str] = frozenset(allowed_filters)
        self._predicates: List[Tuple[str, Callable[[T], bool]]] = []
        self._applied: Dict[str, Any] = {}
        self._sort_key: Optional[Callable[[T], Any]] = None
        self._descending = False

    def where(self, name: str, value: Any, predicate: Callable[[T], bool]) -> "QueryBuilder[T]":
        """Register ``predicate`` under the filter ``name``.

        Raises:
            KeyError: If ``name`` is not one of the allowed filters.
        """
        if name not in self.allowed_filters:
            raise KeyError(f"Unsupported filter: {name}")
        self._predicates.append((name, predicate))
        self._applied[name] = value
        return self

    def order_by(self, key: Callable[[T], Any], *, descending: bool = False) -> "QueryBuilder[T]":
        self._sort_key = key
        self._descending = descending
        return self

    @property
    def applied_filters(self) -> Dict[str, Any]:
        return dict(self._applied)

    def matches(self, row: T) -> bool:
        return all(predicate(row) for _, predicate in self._predicates)

    def execute(self, rows: Iterable[T], request: PageRequest) -> Page[T]:
        """Filter, order and paginate ``rows`` into a :class:`Page`."""
        selected = [row for row in rows if self.matches(row)]
        if self._sort_key is not None:
            selected.sort(key=self._sort_key, reverse=self._descending)
        window = selected[request.offset:request.offset + request.limit]
        return Page(
            items=window,
            page=request.page,
            limit=request.limit,
            total=len(selected),
            filters=self.applied_filters,
        )
