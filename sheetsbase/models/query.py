"""Query models: filters, ordering and the immutable QuerySpec.

A QuerySpec describes one filter/projection/order/limit request against a
single table. It is built either with the fluent QueryBuilder or from an
API payload via build_query(), and is immutable once built.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from sheetsbase.core.errors import ValidationError

# One sheet row: header name -> cell text (None for empty cells)
Record = Dict[str, Optional[str]]

ALL_COLUMNS = "*"

Columns = Union[str, Tuple[str, ...]]


class Operator(str, Enum):
    """Filter operators supported by the query engine."""
    EQ = "eq"          # loose equality
    NEQ = "neq"        # loose inequality
    GT = "gt"          # numeric >
    GTE = "gte"        # numeric >=
    LT = "lt"          # numeric <
    LTE = "lte"        # numeric <=
    LIKE = "like"      # case-insensitive substring


OPERATORS = frozenset(op.value for op in Operator)


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class Filter:
    """A single ``field <operator> value`` condition.

    ``operator`` stays a plain string: the engine treats operators it does
    not know as a pass-through, so specs built from trusted code paths can
    carry them. Untrusted input goes through build_query(), which rejects
    them.
    """
    field: str
    operator: str
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class Order:
    field: str
    direction: str = Direction.ASC.value

    @property
    def descending(self) -> bool:
        return self.direction == Direction.DESC.value

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "direction": self.direction}


@dataclass(frozen=True)
class QuerySpec:
    """Immutable query description.

    Attributes:
        table: Sheet name (required)
        columns: ``"*"`` or an ordered tuple of field names
        filters: AND-combined filters, in construction order
        order: Optional sort field and direction
        limit: Positive value truncates; zero, negative or None means no limit
    """
    table: str
    columns: Columns = ALL_COLUMNS
    filters: Tuple[Filter, ...] = field(default_factory=tuple)
    order: Optional[Order] = None
    limit: Optional[int] = None

    @property
    def selects_all(self) -> bool:
        return self.columns == ALL_COLUMNS

    @property
    def effective_limit(self) -> Optional[int]:
        """The limit that actually applies, or None."""
        if self.limit is not None and self.limit > 0:
            return self.limit
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "table": self.table,
            "columns": self.columns if self.selects_all else list(self.columns),
            "filters": [f.to_dict() for f in self.filters],
            "order": self.order.to_dict() if self.order else None,
            "limit": self.limit,
        }


def parse_columns(columns: Union[str, List[str], Tuple[str, ...], None]) -> Columns:
    """Normalize a select expression.

    Accepts ``"*"``, a comma-separated string (``"name, country"``) or a
    sequence of names. Names are trimmed, blanks dropped and duplicates
    removed keeping the first occurrence. A ``"*"`` anywhere selects all.
    """
    if columns is None:
        return ALL_COLUMNS
    if isinstance(columns, str):
        names = columns.split(",")
    else:
        names = list(columns)

    selected: List[str] = []
    for name in names:
        if not isinstance(name, str):
            raise ValidationError(f"Column names must be strings, got {name!r}", field="select")
        name = name.strip()
        if name == ALL_COLUMNS:
            return ALL_COLUMNS
        if name and name not in selected:
            selected.append(name)

    return tuple(selected) if selected else ALL_COLUMNS


def parse_direction(direction: Optional[str]) -> str:
    if direction is None:
        return Direction.ASC.value
    normalized = str(direction).strip().lower()
    if normalized not in (Direction.ASC.value, Direction.DESC.value):
        raise ValidationError(
            f"Invalid order direction: {direction!r} (expected 'asc' or 'desc')",
            field="order",
        )
    return normalized


class QueryBuilder:
    """Fluent builder for QuerySpec.

    Mutating methods return the builder so calls chain::

        spec = (QueryBuilder().from_("flowers").select("name, price")
                .eq("type", "roses").order("price", "desc").limit(10).build())

    build() snapshots the draft; later calls on the builder do not affect
    specs already built.
    """

    def __init__(self, table: Optional[str] = None):
        self._table = table
        self._columns: Columns = ALL_COLUMNS
        self._filters: List[Filter] = []
        self._order: Optional[Order] = None
        self._limit: Optional[int] = None

    def from_(self, table: str) -> "QueryBuilder":
        self._table = table
        return self

    def select(self, columns: Union[str, List[str], Tuple[str, ...]] = ALL_COLUMNS) -> "QueryBuilder":
        self._columns = parse_columns(columns)
        return self

    def where(self, field: str, operator: str, value: Any) -> "QueryBuilder":
        """Add a filter with an arbitrary operator name."""
        self._filters.append(Filter(field=field, operator=operator, value=value))
        return self

    def eq(self, field: str, value: Any) -> "QueryBuilder":
        return self.where(field, Operator.EQ.value, value)

    def neq(self, field: str, value: Any) -> "QueryBuilder":
        return self.where(field, Operator.NEQ.value, value)

    def gt(self, field: str, value: Any) -> "QueryBuilder":
        return self.where(field, Operator.GT.value, value)

    def gte(self, field: str, value: Any) -> "QueryBuilder":
        return self.where(field, Operator.GTE.value, value)

    def lt(self, field: str, value: Any) -> "QueryBuilder":
        return self.where(field, Operator.LT.value, value)

    def lte(self, field: str, value: Any) -> "QueryBuilder":
        return self.where(field, Operator.LTE.value, value)

    def like(self, field: str, pattern: Any) -> "QueryBuilder":
        return self.where(field, Operator.LIKE.value, pattern)

    def order(self, field: str, direction: str = "asc") -> "QueryBuilder":
        self._order = Order(field=field, direction=parse_direction(direction))
        return self

    def limit(self, count: Optional[int]) -> "QueryBuilder":
        if count is not None and (isinstance(count, bool) or not isinstance(count, int)):
            raise ValidationError(f"Limit must be an integer, got {count!r}", field="limit")
        self._limit = count
        return self

    def build(self) -> QuerySpec:
        if not self._table:
            raise ValidationError('The "table" field is required', field="table")
        return QuerySpec(
            table=self._table,
            columns=self._columns,
            filters=tuple(self._filters),
            order=self._order,
            limit=self._limit,
        )


def _parse_limit(limit: Any) -> Optional[int]:
    if limit is None or limit == "":
        return None
    if isinstance(limit, bool):
        raise ValidationError(f"Limit must be an integer, got {limit!r}", field="limit")
    if isinstance(limit, int):
        return limit
    if isinstance(limit, float) and limit.is_integer():
        return int(limit)
    try:
        return int(str(limit).strip())
    except ValueError:
        raise ValidationError(f"Limit must be an integer, got {limit!r}", field="limit")


def build_query(payload: Dict[str, Any]) -> QuerySpec:
    """Build a QuerySpec from an API query payload.

    Payload shape::

        {
            "table": "flowers",
            "select": "name, price",                       # or "*"
            "filters": [{"field": "type", "op": "eq", "value": "roses"}],
            "order": {"field": "price", "direction": "desc"},
            "limit": 10
        }

    Unknown operators are rejected here rather than passed to the engine.

    Raises:
        ValidationError: on a missing table or a malformed filter/order/limit
    """
    if not isinstance(payload, dict):
        raise ValidationError("Query payload must be an object")

    table = payload.get("table")
    if not table or not isinstance(table, str):
        raise ValidationError('The "table" field is required', field="table")

    builder = QueryBuilder(table)

    if payload.get("select") is not None:
        builder.select(payload["select"])

    filters = payload.get("filters")
    if filters is not None:
        if not isinstance(filters, list):
            raise ValidationError("filters must be a list", table=table, field="filters")
        for item in filters:
            if not isinstance(item, dict):
                raise ValidationError("Invalid filter: must be an object", table=table, field="filters")
            field_name = item.get("field")
            op = item.get("op")
            if not field_name or not op or "value" not in item:
                raise ValidationError(
                    "Invalid filter: must have field, op and value",
                    table=table,
                    field=field_name if isinstance(field_name, str) else "filters",
                )
            if not isinstance(field_name, str) or not isinstance(op, str):
                raise ValidationError(
                    "Invalid filter: field and op must be strings",
                    table=table,
                    field=field_name if isinstance(field_name, str) else "filters",
                )
            if op not in OPERATORS:
                raise ValidationError(
                    f"Unknown operator: {op}",
                    table=table,
                    field=field_name,
                )
            builder.where(field_name, op, item["value"])

    order = payload.get("order")
    if order:
        if not isinstance(order, dict):
            raise ValidationError("order must be an object", table=table, field="order")
        order_field = order.get("field")
        if order_field:
            if not isinstance(order_field, str):
                raise ValidationError("order field must be a string", table=table, field="order")
            builder.order(order_field, order.get("direction") or "asc")

    builder.limit(_parse_limit(payload.get("limit")))

    return builder.build()
