"""
Non-bulk lookups through the synchronous REST query API.

- Soft-delete fallback: the data query re-run with ``IsDeleted = true`` on the
  queryAll resource, paged through ``nextRecordsUrl``
- Record count: ``totalSize`` of a COUNT() query
- High watermark: the greatest non-null value of a column as a
  yyyyMMddHHmmss integer
"""

import logging
import re
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from bulkextract.connection import QueryApi
from bulkextract.errors import RemoteResponseError
from bulkextract.models import Record
from bulkextract.query import (
    SOFT_DELETE_COLUMN,
    WATERMARK_VALUE_FORMAT,
    PredicateLike,
    build_count_query,
    build_high_watermark_query,
    compose_query,
)

logger = logging.getLogger(__name__)

# Per-record metadata the REST API adds next to the fields
RECORD_METADATA_KEY = "attributes"

_UNCONVERTED = re.compile(r"unconverted data remains: (.+)$", re.DOTALL)


def _strip_metadata(record: dict[str, Any]) -> Record:
    return {k: v for k, v in record.items() if k != RECORD_METADATA_KEY}


def iter_query_records(api: QueryApi, soql: str, include_deleted: bool = False) -> Iterator[Record]:
    """
    Yield every record of a REST query, following ``nextRecordsUrl`` pages.

    Raises:
        RemoteResponseError: If a page has no ``records`` list, or is not
            done and has no ``nextRecordsUrl``
    """
    response = api.query(soql, include_deleted=include_deleted)
    pages = 1
    while True:
        records = response.get("records")
        if not isinstance(records, list):
            raise RemoteResponseError(f"Query response has no records list (page {pages})")
        for record in records:
            yield _strip_metadata(record)

        if response.get("done", True):
            logger.debug(f"Query finished after {pages} page(s)")
            return

        next_url = response.get("nextRecordsUrl")
        if not next_url:
            raise RemoteResponseError(f"Query response not done but has no nextRecordsUrl (page {pages})")
        response = api.query_more(next_url)
        pages += 1


class SoftDeleteFallback:
    """
    Fetches logically deleted rows of an entity over the REST API.

    Usage:
        fallback = SoftDeleteFallback(query_api)
        for record in fallback.fetch("SELECT Id, IsDeleted FROM Account"):
            ...
    """

    def __init__(self, api: QueryApi, deleted_column: str = SOFT_DELETE_COLUMN):
        self._api = api
        self._deleted_column = deleted_column

    def fetch(
        self,
        query: str,
        predicates: Optional[Iterable[PredicateLike]] = None,
    ) -> Iterator[Record]:
        soql = compose_query(
            query,
            predicates,
            include_deleted=True,
            deleted_column=self._deleted_column,
        )
        logger.info(f"Soft delete QUERY: {soql}")
        return iter_query_records(self._api, soql, include_deleted=True)


def fetch_record_count(
    api: QueryApi,
    entity: str,
    base_query: Optional[str] = None,
    predicates: Optional[Iterable[PredicateLike]] = None,
) -> int:
    """
    Count the rows the extraction query would return.

    Raises:
        RemoteResponseError: If the response has no integer ``totalSize``
    """
    soql = build_count_query(entity, base_query, predicates)
    logger.info(f"Count QUERY: {soql}")
    response = api.query(soql)
    total = response.get("totalSize")
    if isinstance(total, bool) or not isinstance(total, int):
        raise RemoteResponseError(f"Count response for {entity} has no totalSize: {response!r}")
    logger.info(f"Source record count for {entity}: {total}")
    return total


def _parse_leading(value: str, fmt: str) -> datetime:
    """strptime that tolerates trailing text such as fractional seconds or a zone offset."""
    try:
        return datetime.strptime(value, fmt)
    except ValueError as e:
        match = _UNCONVERTED.search(str(e))
        if not match:
            raise
        return datetime.strptime(value[: len(value) - len(match.group(1))], fmt)


def parse_watermark_value(value: Any, source_format: Optional[str] = None) -> int:
    """
    Convert a watermark column value into a yyyyMMddHHmmss integer.

    Without a source format the value must already be integral.

    Raises:
        RemoteResponseError: If the value does not parse
    """
    try:
        if source_format:
            return int(_parse_leading(str(value), source_format).strftime(WATERMARK_VALUE_FORMAT))
        return int(value)
    except (TypeError, ValueError) as e:
        raise RemoteResponseError(f"Cannot parse watermark value {value!r}: {e}") from e


def fetch_high_watermark(
    api: QueryApi,
    entity: str,
    column: str,
    base_query: Optional[str] = None,
    predicates: Optional[Iterable[PredicateLike]] = None,
    source_format: Optional[str] = None,
) -> int:
    """
    Look up the highest value of ``column``.

    Returns:
        The value as a yyyyMMddHHmmss integer, or -1 when no row has one
    """
    soql = build_high_watermark_query(entity, column, base_query, predicates)
    logger.info(f"High watermark QUERY: {soql}")
    response = api.query(soql)
    records = response.get("records")
    if not isinstance(records, list):
        raise RemoteResponseError(f"High watermark response for {entity} has no records list")
    if not records:
        logger.info(f"No high watermark for {entity}.{column}")
        return -1

    value = records[0].get(column)
    if value is None:
        return -1
    watermark = parse_watermark_value(value, source_format)
    logger.info(f"High watermark for {entity}.{column}: {watermark}")
    return watermark
