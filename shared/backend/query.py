"""
Query Types
===========

Provider-neutral query description used by every DatabaseService, plus the
in-memory evaluator used by the local provider.

Version: 0.1.0
"""

import fnmatch
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from shared.backend.errors import DatabaseError


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FilterOperator(str, Enum):
    """Comparison operators supported by QueryFilter."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    LIKE = "like"


class QueryFilter(BaseModel):
    """A single column predicate."""

    operator: FilterOperator = FilterOperator.EQ
    value: Any = None


class OrderBy(BaseModel):
    """Sort clause."""

    column: str
    ascending: bool = True


class QueryOptions(BaseModel):
    """Select/update/delete options."""

    filters: dict[str, QueryFilter] = Field(default_factory=dict)
    columns: list[str] | None = None
    order_by: list[OrderBy] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)

    @classmethod
    def where(cls, **filters: Any) -> "QueryOptions":
        """
        Build options from keyword filters.

        Plain values become equality filters; QueryFilter values are kept.

        Example:
            QueryOptions.where(user_id="u1", status=QueryFilter(operator="in", value=[...]))
        """
        return cls(filters=normalize_filters(filters))


@dataclass
class QueryResult:
    """Rows returned by a select, with the total match count before paging."""

    data: list[dict[str, Any]] = field(default_factory=list)
    count: int = 0

    def first(self) -> dict[str, Any] | None:
        """Return the first row or None."""
        return self.data[0] if self.data else None


def normalize_filters(filters: dict[str, Any] | None) -> dict[str, QueryFilter]:
    """Convert a mixed filter map into QueryFilter values."""
    if not filters:
        return {}
    result: dict[str, QueryFilter] = {}
    for column, value in filters.items():
        if isinstance(value, QueryFilter):
            result[column] = value
        elif isinstance(value, dict) and "operator" in value:
            result[column] = QueryFilter.model_validate(value)
        else:
            result[column] = QueryFilter(operator=FilterOperator.EQ, value=value)
    return result


def validate_identifier(name: str, kind: str = "identifier") -> str:
    """
    Ensure a table or column name is a plain SQL identifier.

    Raises:
        DatabaseError: If the name contains anything but letters, digits and underscores
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise DatabaseError(f"Invalid {kind}: {name!r}")
    return name


def validate_options(options: QueryOptions) -> None:
    """Validate every identifier referenced by the options."""
    for column in options.filters:
        validate_identifier(column, "column")
    for column in options.columns or []:
        validate_identifier(column, "column")
    for order in options.order_by:
        validate_identifier(order.column, "column")


def as_datetime(value: Any) -> datetime:
    """Parse a datetime or ISO-8601 string; naive values are taken as UTC."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _comparable(value: Any) -> Any:
    # ISO-8601 strings and datetimes compare with each other
    if isinstance(value, str):
        try:
            return as_datetime(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        return as_datetime(value)
    return value


def _compare(left: Any, right: Any) -> int | None:
    a, b = _comparable(left), _comparable(right)
    try:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    except TypeError:
        return None


def _like_to_glob(pattern: str) -> str:
    return pattern.replace("%", "*").replace("_", "?")


def matches(row: dict[str, Any], filters: dict[str, QueryFilter]) -> bool:
    """Evaluate filters against a row (all predicates must hold)."""
    for column, flt in filters.items():
        actual = row.get(column)
        op = flt.operator
        expected = flt.value

        if op == FilterOperator.EQ:
            ok = actual == expected or (
                actual is not None and expected is not None and _compare(actual, expected) == 0
            )
        elif op == FilterOperator.NEQ:
            ok = actual != expected
        elif op == FilterOperator.IN:
            ok = actual in list(expected or [])
        elif op == FilterOperator.LIKE:
            ok = isinstance(actual, str) and fnmatch.fnmatchcase(actual, _like_to_glob(str(expected)))
        else:
            if actual is None or expected is None:
                return False
            cmp = _compare(actual, expected)
            if cmp is None:
                return False
            ok = {
                FilterOperator.GT: cmp > 0,
                FilterOperator.GTE: cmp >= 0,
                FilterOperator.LT: cmp < 0,
                FilterOperator.LTE: cmp <= 0,
            }[op]

        if not ok:
            return False
    return True


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts last in ascending order
    if value is None:
        return (1, "")
    return (0, _comparable(value))


def apply_query(rows: Iterable[dict[str, Any]], options: QueryOptions) -> QueryResult:
    """Filter, sort, page and project rows in memory."""
    selected = [row for row in rows if matches(row, options.filters)]

    # Stable multi-key sort: apply keys from last to first
    for order in reversed(options.order_by):
        selected.sort(
            key=lambda r, col=order.column: _sort_key(r.get(col)),
            reverse=not order.ascending,
        )

    total = len(selected)
    if options.offset:
        selected = selected[options.offset:]
    if options.limit is not None:
        selected = selected[: options.limit]

    if options.columns:
        selected = [{c: row.get(c) for c in options.columns} for row in selected]
    else:
        selected = [dict(row) for row in selected]

    return QueryResult(data=selected, count=total)
