"""
BulkExtractor - run one entity extraction end to end.

    compose query -> JobOrchestrator.run -> ResumableStreamReader
    -> RecordBatcher (-> SoftDeleteFallback) -> RecordBatches
    -> optional catalog registration

The bulk job is closed exactly once when the batches are exhausted, when
the consumer stops iterating, on failure, or when the extractor is closed.
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Iterable, Iterator, Optional

from bulkextract.batcher import RecordBatcher
from bulkextract.catalog import Catalog, Registration, TableSpec, register_dataset
from bulkextract.config import BulkConfig
from bulkextract.connection import BulkConnection, QueryApi
from bulkextract.errors import BulkExtractError, ConfigurationError
from bulkextract.fallback import SoftDeleteFallback, fetch_high_watermark, fetch_record_count
from bulkextract.models import RecordBatch
from bulkextract.orchestrator import JobOrchestrator
from bulkextract.query import PredicateLike, compose_query, select_columns
from bulkextract.stream import ExtractionCursor, ResumableStreamReader
from bulkextract.utils import format_duration

logger = logging.getLogger(__name__)


class BulkExtractor:
    """
    Extracts entities through the bulk API.

    Usage:
        with BulkExtractor(connection, config.bulk, query_api=api) as extractor:
            for batch in extractor.extract("Account", "SELECT Id, Name FROM Account"):
                sink.write(batch)
    """

    def __init__(
        self,
        connection: BulkConnection,
        config: Optional[BulkConfig] = None,
        *,
        query_api: Optional[QueryApi] = None,
        catalog: Optional[Catalog] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            connection: Remote bulk API
            config: Bulk settings (defaults apply when omitted)
            query_api: REST query API for counts, watermarks and soft deletes
            catalog: Table catalog extracted datasets are registered in
            sleep: Blocking sleep used between status polls
            clock: Monotonic clock for elapsed-time logging
        """
        self.connection = connection
        self.config = config or BulkConfig()
        self.query_api = query_api
        self.catalog = catalog
        self._sleep = sleep
        self._clock = clock
        self._active: list[JobOrchestrator] = []

    def __enter__(self) -> "BulkExtractor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def extract(
        self,
        entity: str,
        query: str,
        predicates: Optional[Iterable[PredicateLike]] = None,
        *,
        columns: Optional[Iterable[str]] = None,
        expected_record_count: Optional[int] = None,
        table: Optional[TableSpec] = None,
    ) -> Iterator[RecordBatch]:
        """
        Extract one entity as a stream of RecordBatches.

        Args:
            entity: Target entity name
            query: Base query, possibly ending in a LIMIT clause
            predicates: Conditions ANDed into the query
            columns: Record schema columns; defaults to the SELECT list of
                the query, then to the streamed header
            expected_record_count: Known record count; skips the count query
            table: Registered in the catalog once every batch was consumed;
                empty columns are filled from the record schema

        Yields:
            RecordBatches in stream order, soft-deleted rows last

        Raises:
            JobFailure: The bulk batch or a chunk batch failed
            TransientStreamError: Reconnect budget exhausted
            RepositionMismatch: Replay after reconnect did not line up
        """
        if table is not None and self.catalog is None:
            raise ConfigurationError(f"A catalog is required to register {table.qualified_name}")
        predicates = list(predicates or [])
        composed = compose_query(query, predicates)
        schema_columns = list(columns) if columns is not None else select_columns(query)

        count_records = None
        if self.query_api is not None:
            count_records = lambda: fetch_record_count(self.query_api, entity, query, predicates)

        orchestrator = JobOrchestrator(
            self.connection,
            self.config,
            count_records=count_records,
            sleep=self._sleep,
            clock=self._clock,
        )
        self._active.append(orchestrator)
        start = self._clock()
        cursor: Optional[ExtractionCursor] = None
        batches = 0
        try:
            plan = orchestrator.run(entity, composed, expected_record_count)
            cursor = ExtractionCursor(plan.job.id, plan.references, entity=entity)

            soft_delete_fallback = None
            if self.query_api is not None:
                fallback = SoftDeleteFallback(self.query_api, self.config.soft_delete_column)
                soft_delete_fallback = lambda: fallback.fetch(query, predicates)

            batcher = RecordBatcher(
                ResumableStreamReader(self.connection, self.config.fetch_retry_limit),
                cursor,
                self.config.fetch_size,
                soft_delete_fallback=soft_delete_fallback,
                columns=schema_columns or None,
                soft_delete_column=self.config.soft_delete_column,
                soft_deletes_disabled=self.config.soft_deletes_pull_disabled,
            )
            for batch in batcher:
                batches += 1
                logger.debug(f"Batch {batches} of {entity}: {batch.to_dict()}")
                yield batch

            duration = format_duration(self._clock() - start)
            logger.info(
                f"Extracted {batcher.total_records} records of {entity} in {batches} batches ({duration})",
                extra={"entity": entity, "job_id": plan.job.id, "event": "extract.completed"},
            )
            if table is not None:
                self._register(table, schema_columns or cursor.columns or [])
        except Exception as e:
            context = e.context if isinstance(e, BulkExtractError) else {}
            logger.error(
                f"Extraction of {entity} failed: {e}",
                exc_info=True,
                extra={"entity": entity, "event": "extract.failed", **context},
            )
            raise
        finally:
            if cursor is not None:
                cursor.close()
            self._release(orchestrator)

    def record_count(
        self,
        entity: str,
        query: Optional[str] = None,
        predicates: Optional[Iterable[PredicateLike]] = None,
    ) -> int:
        """Count the rows an extraction would return."""
        return fetch_record_count(self._require_query_api(), entity, query, predicates)

    def high_watermark(
        self,
        entity: str,
        column: str,
        query: Optional[str] = None,
        predicates: Optional[Iterable[PredicateLike]] = None,
        source_format: Optional[str] = None,
    ) -> int:
        """Highest value of column as a yyyyMMddHHmmss integer, -1 if none."""
        return fetch_high_watermark(
            self._require_query_api(), entity, column, query, predicates, source_format
        )

    def close(self) -> None:
        """Close every bulk job still open. Safe to call more than once."""
        for orchestrator in list(self._active):
            self._release(orchestrator)

    def _release(self, orchestrator: JobOrchestrator) -> None:
        if orchestrator in self._active:
            self._active.remove(orchestrator)
        try:
            orchestrator.close()
        except Exception as e:
            job_id = orchestrator.job.id if orchestrator.job else None
            logger.warning(f"Failed to close bulk job {job_id}: {e}")

    def _require_query_api(self) -> QueryApi:
        if self.query_api is None:
            raise ConfigurationError("A query_api is required for REST lookups")
        return self.query_api

    def _register(self, table: TableSpec, columns: list[str]) -> Registration:
        if not table.columns:
            # CSV results carry no types
            table = replace(table, columns=tuple((name, "string") for name in columns))
        registration = register_dataset(self.catalog, table)
        logger.info(
            f"Catalog table {table.qualified_name} {registration.value}",
            extra={"event": "catalog.registered", "metadata": table.to_dict()},
        )
        return registration
