"""
Record Batcher - package decoded rows into size-bounded RecordBatches.

Each pull cycle asks the stream reader for up to batch_size rows. Once the
reader reports the job finished and a cycle comes back empty, the batcher
either hands off to the soft-delete fallback (when the schema has the
soft-delete column and the pull is not disabled) or ends the extraction.
"""

import logging
from itertools import islice
from typing import Callable, Iterable, Iterator, Optional

from bulkextract.models import Record, RecordBatch
from bulkextract.stream import ExtractionCursor, ResumableStreamReader

logger = logging.getLogger(__name__)


class RecordBatcher:
    """
    Pulls RecordBatches from a job cursor.

    Usage:
        batcher = RecordBatcher(reader, cursor, batch_size=1000)
        for batch in batcher:
            sink.write(batch)
    """

    def __init__(
        self,
        reader: ResumableStreamReader,
        cursor: ExtractionCursor,
        batch_size: int,
        *,
        soft_delete_fallback: Optional[Callable[[], Iterable[Record]]] = None,
        columns: Optional[Iterable[str]] = None,
        soft_delete_column: str = "IsDeleted",
        soft_deletes_disabled: bool = False,
    ):
        """
        Args:
            reader: Stream reader
            cursor: The job's cursor
            batch_size: Maximum rows per batch
            soft_delete_fallback: Runs the non-bulk query for soft-deleted rows
            columns: Record schema column names; defaults to the streamed header
            soft_delete_column: Column whose presence enables the fallback
            soft_deletes_disabled: Never run the fallback
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._reader = reader
        self._cursor = cursor
        self._batch_size = batch_size
        self._soft_delete_fallback = soft_delete_fallback
        self._columns = list(columns) if columns is not None else None
        self._soft_delete_column = soft_delete_column
        self._soft_deletes_disabled = soft_deletes_disabled
        self._fallback_rows: Optional[Iterator[Record]] = None
        self._fallback_count = 0
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    @property
    def total_records(self) -> int:
        return self._cursor.total_rows + self._fallback_count

    def __iter__(self) -> Iterator[RecordBatch]:
        while True:
            batch = self.next_batch()
            if batch is None:
                return
            yield batch

    def next_batch(self) -> Optional[RecordBatch]:
        """
        Run one pull cycle.

        Returns:
            The next non-empty RecordBatch, or None when extraction is complete
        """
        if self._done:
            return None

        if self._fallback_rows is None:
            rows = self._reader.fetch(self._cursor, self._batch_size)
            if rows:
                return RecordBatch(
                    records=rows,
                    total_records=self.total_records,
                    job_finished=self._cursor.finished,
                )
            if not self._start_soft_delete_fallback():
                self._done = True
                return None

        rows = list(islice(self._fallback_rows, self._batch_size))
        if not rows:
            logger.info(f"Soft-delete fallback returned {self._fallback_count} records")
            self._done = True
            return None
        self._fallback_count += len(rows)
        return RecordBatch(
            records=rows,
            total_records=self.total_records,
            job_finished=True,
            soft_deleted=True,
        )

    def _schema_columns(self) -> list[str]:
        if self._columns is not None:
            return self._columns
        return self._cursor.columns or []

    def should_pull_soft_deletes(self) -> bool:
        """Soft-delete column present in the schema and the pull not disabled."""
        return (
            self._soft_delete_column in self._schema_columns()
            and not self._soft_deletes_disabled
        )

    def _start_soft_delete_fallback(self) -> bool:
        if not self.should_pull_soft_deletes():
            logger.info("Ignoring soft delete records")
            return False
        if self._soft_delete_fallback is None:
            logger.warning(
                f"Schema has {self._soft_delete_column} but no fallback query is configured; "
                "skipping soft delete records"
            )
            return False
        logger.info("Bulk job finished, pulling soft deleted records")
        self._fallback_rows = iter(self._soft_delete_fallback())
        return True
