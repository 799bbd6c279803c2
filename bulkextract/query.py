"""
Query Composer - Build the query text sent to the remote job.

Supports:
- Conjunctive predicates appended to a base query
- Forced "include logically deleted rows" condition
- Preservation of a trailing LIMIT clause (stripped, then reattached verbatim)
- Record-count and high-watermark lookup queries derived from the base query
- Watermark predicate conditions rendered as hour, date or timestamp literals
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Union

from bulkextract.errors import QueryCompositionError

SOFT_DELETE_COLUMN = "IsDeleted"

# Watermark values travel as yyyyMMddHHmmss integers
WATERMARK_VALUE_FORMAT = "%Y%m%d%H%M%S"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"
DATE_FORMAT = "%Y-%m-%d"
HOUR_FORMAT = "%H"


@dataclass(frozen=True)
class Predicate:
    """A single condition combined conjunctively into the extraction query."""
    condition: str
    column: Optional[str] = None

    def __str__(self) -> str:
        return self.condition


PredicateLike = Union[Predicate, str]


class WatermarkType(str, Enum):
    TIMESTAMP = "timestamp"
    DATE = "date"
    HOUR = "hour"
    SIMPLE = "simple"


def _condition(predicate: PredicateLike) -> str:
    return predicate.condition if isinstance(predicate, Predicate) else str(predicate)


def get_limit_clause(query: Optional[str]) -> str:
    """Return the trailing limit clause of a query (with its leading space), or "".

    The match is case-insensitive and returned verbatim from the original text.
    """
    if not query:
        return ""
    index = query.lower().find(" limit")
    if index > 0:
        return query[index:]
    return ""


def strip_limit_clause(query: str) -> str:
    limit = get_limit_clause(query)
    return query[: len(query) - len(limit)] if limit else query


def get_where_clause(query: Optional[str]) -> str:
    """Return the WHERE clause of a query from " where " to the end, or ""."""
    if not query:
        return ""
    index = query.lower().find(" where ")
    if index > 0:
        return query[index:]
    return ""


def add_predicate(query: str, condition: str) -> str:
    """Append a condition to a query.

    Adds ``where (cond)`` when the query has no WHERE clause yet and
    ``and (cond)`` otherwise.

    Raises:
        QueryCompositionError: If the query has no FROM clause, or carries an
            ORDER BY / GROUP BY / HAVING / LIMIT the condition would land after.
    """
    if not condition:
        return query

    normalized = query.lower().strip()
    if " from " not in normalized:
        raise QueryCompositionError(f"Query does not have a FROM clause: {query}")
    for keyword in (" by ", " having ", " limit "):
        if keyword in normalized:
            raise QueryCompositionError(
                f"Cannot add predicate to query containing '{keyword.strip()}': {query}"
            )

    keyword = " and " if " where " in normalized else " where "
    return f"{query}{keyword}({condition})"


def compose_query(
    query: str,
    predicates: Optional[Iterable[PredicateLike]] = None,
    *,
    include_deleted: bool = False,
    deleted_column: str = SOFT_DELETE_COLUMN,
) -> str:
    """Build the query text for a bulk job.

    Args:
        query: Base query, possibly ending in a LIMIT clause
        predicates: Conditions to AND into the query
        include_deleted: Force ``<deleted_column> = true`` so only logically
            deleted rows are returned
        deleted_column: Soft-delete marker column

    Returns:
        Query text with predicates appended and the limit clause restored
    """
    predicates = list(predicates or [])
    if not predicates and not include_deleted:
        return query

    limit = get_limit_clause(query)
    composed = strip_limit_clause(query)

    for predicate in predicates:
        composed = add_predicate(composed, _condition(predicate))

    if include_deleted:
        composed = add_predicate(composed, f"{deleted_column} = true")

    return composed + limit


def build_count_query(
    entity: str,
    base_query: Optional[str] = None,
    predicates: Optional[Iterable[PredicateLike]] = None,
) -> str:
    """Build the row-count query for an entity.

    The WHERE clause of the base query is carried over, then the predicates
    are appended and the base query's limit clause is reattached.
    """
    query = f"SELECT COUNT() FROM {entity}{get_where_clause(base_query)}"
    query = strip_limit_clause(query)
    for predicate in predicates or []:
        query = add_predicate(query, _condition(predicate))
    return query + get_limit_clause(base_query)


def build_high_watermark_query(
    entity: str,
    watermark_column: str,
    base_query: Optional[str] = None,
    predicates: Optional[Iterable[PredicateLike]] = None,
) -> str:
    """Build the query selecting the single highest watermark value."""
    query = f"SELECT {watermark_column} FROM {entity}{get_where_clause(base_query)}"
    query = strip_limit_clause(query)
    for predicate in predicates or []:
        query = add_predicate(query, _condition(predicate))
    query = add_predicate(query, f"{watermark_column} != null")
    return f"{query} ORDER BY {watermark_column} desc LIMIT 1"


def watermark_source_format(watermark_type: WatermarkType) -> Optional[str]:
    """strptime format of watermark column values as returned by the service."""
    if watermark_type == WatermarkType.TIMESTAMP:
        return "%Y-%m-%dT%H:%M:%S"
    if watermark_type == WatermarkType.DATE:
        return "%Y-%m-%d"
    return None


def _format_watermark(value: int, value_format: str, output_format: str) -> str:
    try:
        parsed = datetime.strptime(str(value), value_format)
    except ValueError as e:
        raise QueryCompositionError(
            f"Watermark value {value} does not match format {value_format}"
        ) from e
    return parsed.strftime(output_format)


def timestamp_predicate(
    column: str, value: int, operator: str, value_format: str = WATERMARK_VALUE_FORMAT
) -> Predicate:
    literal = _format_watermark(value, value_format, TIMESTAMP_FORMAT)
    return Predicate(condition=f"{column} {operator} {literal}", column=column)


def date_predicate(
    column: str, value: int, operator: str, value_format: str = WATERMARK_VALUE_FORMAT
) -> Predicate:
    literal = _format_watermark(value, value_format, DATE_FORMAT)
    return Predicate(condition=f"{column} {operator} {literal}", column=column)


def hour_predicate(
    column: str, value: int, operator: str, value_format: str = WATERMARK_VALUE_FORMAT
) -> Predicate:
    literal = _format_watermark(value, value_format, HOUR_FORMAT)
    return Predicate(condition=f"{column} {operator} {literal}", column=column)


def select_columns(query: Optional[str]) -> list[str]:
    """Return the plain field names of a query's SELECT list.

    Function calls and subqueries are left out, and a query that does not
    start with SELECT gives an empty list.

    Example:
        >>> select_columns("SELECT Id, IsDeleted FROM Account WHERE Name != null")
        ['Id', 'IsDeleted']
    """
    if not query:
        return []
    normalized = query.lower()
    if not normalized.lstrip().startswith("select "):
        return []

    start = normalized.find("select ") + len("select ")
    depth = 0
    end = -1
    for index in range(start, len(query)):
        char = query[index]
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif depth == 0 and normalized.startswith(" from ", index):
            end = index
            break
    if end < 0:
        return []

    columns = []
    depth = 0
    field_text = ""
    for char in query[start:end] + ",":
        if char == "," and depth == 0:
            name = field_text.strip()
            if name and "(" not in name and " " not in name:
                columns.append(name)
            field_text = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        field_text += char
    return columns
