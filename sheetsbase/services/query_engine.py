"""In-memory query execution over materialized sheet records.

Pipeline (fixed order): filter -> project -> order -> limit.

Supported operators:
- eq: Loose equality (text forms equal, or both parse to the same number)
- neq: Negation of eq
- gt / gte / lt / lte: Numeric comparison; a side that does not parse
  as a number excludes the record
- like: Case-insensitive substring containment (None treated as "")

Sheet cells arrive as text, so every numeric interpretation goes through
try_parse_number() instead of implicit coercion.
"""

import functools
import math
import re
from typing import Any, Callable, Iterable, List, Optional, Tuple

import pyuca

from sheetsbase.core.errors import ValidationError
from sheetsbase.core.logging import get_logger
from sheetsbase.models.query import Filter, Operator, QuerySpec, Record

logger = get_logger(__name__)

_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def try_parse_number(value: Any) -> Optional[float]:
    """Parse a cell or filter value as a number.

    Returns None for None, booleans, blank text, non-finite values and any
    text that is not a plain decimal literal.

    Examples:
        >>> try_parse_number(" 12.5 ")
        12.5
        >>> try_parse_number("12abc") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMBER_RE.fullmatch(text):
            return None
        number = float(text)
    else:
        return None
    return number if math.isfinite(number) else None


def as_text(value: Any) -> str:
    """Text form of a value for equality and string comparison."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def loosely_equal(left: Any, right: Any) -> bool:
    """Equality rule used by eq/neq.

    Two values are equal when their text forms are equal or when both
    parse to the same number, so ``"1"`` equals ``1`` and ``"1.0"``.
    """
    if as_text(left) == as_text(right):
        return True
    left_num = try_parse_number(left)
    right_num = try_parse_number(right)
    return left_num is not None and right_num is not None and left_num == right_num


def _numeric(actual: Any, target: Any, comparator: Callable[[float, float], bool]) -> bool:
    actual_num = try_parse_number(actual)
    target_num = try_parse_number(target)
    if actual_num is None or target_num is None:
        return False
    return comparator(actual_num, target_num)


@functools.lru_cache(maxsize=1)
def _collator() -> pyuca.Collator:
    # Loads the DUCET table once per process
    return pyuca.Collator()


def collation_key(value: Any) -> Tuple[int, ...]:
    """Unicode collation key of a value's text form.

    Case and accents only break ties: "apple" < "Apple" < "banana" < "Émile" < "Zoe".
    """
    return _collator().sort_key(as_text(value))


def compare_values(left: Any, right: Any) -> int:
    """Three-way comparison used for ordering.

    Numeric when both sides parse as numbers, Unicode collation otherwise.
    """
    left_num = try_parse_number(left)
    right_num = try_parse_number(right)
    if left_num is not None and right_num is not None:
        return (left_num > right_num) - (left_num < right_num)
    left_key, right_key = collation_key(left), collation_key(right)
    return (left_key > right_key) - (left_key < right_key)


class QueryEngine:
    """Executes a QuerySpec against an already fetched record sequence.

    Pure and synchronous: no I/O, no shared state.
    """

    def execute(self, records: Iterable[Record], spec: QuerySpec) -> List[Record]:
        """Run the filter/project/order/limit pipeline.

        Args:
            records: Raw records of ``spec.table``
            spec: Query to apply

        Returns:
            New list of result records

        Raises:
            ValidationError: If ``spec.table`` is empty
        """
        if not spec.table:
            raise ValidationError('The "table" field is required', field="table")

        data = list(records)
        data = self.apply_filters(data, spec)
        data = self.apply_projection(data, spec)
        data = self.apply_order(data, spec)
        data = self.apply_limit(data, spec)

        logger.debug("Query executed", table=spec.table, results=len(data))
        return data

    def apply_filters(self, records: List[Record], spec: QuerySpec) -> List[Record]:
        if not spec.filters:
            return records
        return [
            record for record in records
            if all(self.matches(record, f, table=spec.table) for f in spec.filters)
        ]

    def matches(self, record: Record, condition: Filter, table: Optional[str] = None) -> bool:
        """Evaluate one filter against one record."""
        actual = record.get(condition.field)
        target = condition.value
        operator = condition.operator

        if operator == Operator.EQ.value:
            return loosely_equal(actual, target)

        elif operator == Operator.NEQ.value:
            return not loosely_equal(actual, target)

        elif operator == Operator.GT.value:
            return _numeric(actual, target, lambda a, b: a > b)

        elif operator == Operator.GTE.value:
            return _numeric(actual, target, lambda a, b: a >= b)

        elif operator == Operator.LT.value:
            return _numeric(actual, target, lambda a, b: a < b)

        elif operator == Operator.LTE.value:
            return _numeric(actual, target, lambda a, b: a <= b)

        elif operator == Operator.LIKE.value:
            return as_text(target).lower() in as_text(actual).lower()

        else:
            logger.warning("Unknown filter operator, filter ignored",
                           table=table,
                           field=condition.field,
                           operator=operator)
            return True

    def apply_projection(self, records: List[Record], spec: QuerySpec) -> List[Record]:
        if spec.selects_all:
            return records
        return [
            {column: record.get(column) for column in spec.columns}
            for record in records
        ]

    def apply_order(self, records: List[Record], spec: QuerySpec) -> List[Record]:
        if spec.order is None:
            return records

        field = spec.order.field
        sign = -1 if spec.order.descending else 1

        def compare(a: Record, b: Record) -> int:
            return sign * compare_values(a.get(field), b.get(field))

        # sorted() is stable, and desc negates the comparison, so ties keep input order
        return sorted(records, key=functools.cmp_to_key(compare))

    def apply_limit(self, records: List[Record], spec: QuerySpec) -> List[Record]:
        limit = spec.effective_limit
        if limit is None:
            return records
        return records[:limit]
