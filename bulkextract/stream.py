"""
Resumable Stream Reader - read result references as CSV, surviving dropped connections.

Per job the reader walks the result references strictly in order:

    Idle -> Streaming(i) -> [rows remaining] | [exhausted -> Streaming(i + 1)]
         -> Finished

All position state lives in an ExtractionCursor (and the StreamCursor of the
reference being read) that the caller threads through every fetch() call, so
one reader can serve independent jobs without shared mutable state.

On an I/O failure mid-read the current stream is closed, the same reference
is reopened, the header and exactly the rows already delivered from that
reference are skipped, and the last skipped row must equal the last row
delivered before the failure. A mismatch raises RepositionMismatch.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional

from bulkextract.connection import BulkConnection
from bulkextract.config import DEFAULT_FETCH_RETRY_LIMIT
from bulkextract.errors import (
    PermanentError,
    RepositionMismatch,
    TransientError,
    TransientStreamError,
)
from bulkextract.models import Record, ResultReference

logger = logging.getLogger(__name__)

ENCODING = "utf-8"

# Failures of the underlying stream that are worth a reconnect
RETRYABLE_ERRORS = (OSError, TransientError)


def csv_to_record(header: list[str], row: list[str]) -> Record:
    """
    Pair a CSV row with the header.

    Empty fields become None. Missing trailing fields become None and fields
    beyond the header are dropped.
    """
    record: Record = {}
    for i, column in enumerate(header):
        value = row[i] if i < len(row) else None
        record[column] = value if value != "" else None
    return record


@dataclass
class StreamCursor:
    """
    Read position within one result reference.

    Attributes:
        reference: The result being read
        handle: Open byte stream (None once closed)
        rows: CSV row iterator over handle
        header: Column names, None until the header row was consumed
        rows_delivered: Data rows handed out from this reference
        last_row: Raw fields of the last delivered row
    """
    reference: ResultReference
    handle: Optional[BinaryIO] = None
    rows: Optional[Iterator[list[str]]] = None
    header: Optional[list[str]] = None
    rows_delivered: int = 0
    last_row: Optional[list[str]] = None
    _text: Optional[io.TextIOWrapper] = field(default=None, init=False, repr=False)

    @property
    def header_read(self) -> bool:
        return self.header is not None

    @property
    def is_open(self) -> bool:
        return self.handle is not None

    def attach(self, handle: BinaryIO) -> None:
        self.handle = handle
        self._text = io.TextIOWrapper(handle, encoding=ENCODING, newline="")
        self.rows = csv.reader(self._text)

    def close(self) -> None:
        if self.handle is not None:
            # closing the text wrapper closes the underlying handle
            try:
                self._text.close()
            except (OSError, ValueError) as e:
                logger.debug(f"Error closing stream for {self.reference}: {e}")
        self.handle = None
        self.rows = None


@dataclass
class ExtractionCursor:
    """
    Position of one job's extraction across all of its result references.

    Attributes:
        job_id: Owning bulk job
        references: Consumption plan, in order
        next_index: Index of the next reference to open
        stream: Cursor of the reference being read, if any
        total_rows: Rows delivered for the whole job (monotonic)
        finished: Every reference has been consumed
        entity: Entity name, for error context
        columns: Header of the first result read, None until then
    """
    job_id: str
    references: list[ResultReference] = field(default_factory=list)
    next_index: int = 0
    stream: Optional[StreamCursor] = None
    total_rows: int = 0
    finished: bool = False
    entity: Optional[str] = None
    columns: Optional[list[str]] = None

    def close(self) -> None:
        """Close the open stream, if any."""
        if self.stream is not None:
            self.stream.close()
            self.stream = None


class ResumableStreamReader:
    """
    Reads decoded rows from a job's result references.

    Usage:
        reader = ResumableStreamReader(connection, retry_limit=5)
        cursor = ExtractionCursor(job_id, references)
        try:
            while not cursor.finished:
                rows = reader.fetch(cursor, 1000)
        finally:
            cursor.close()
    """

    def __init__(self, connection: BulkConnection, retry_limit: int = DEFAULT_FETCH_RETRY_LIMIT):
        """
        Args:
            connection: Remote bulk API
            retry_limit: Reconnect attempts allowed per fetch before failing
        """
        self._connection = connection
        self._retry_limit = retry_limit

    def fetch(self, cursor: ExtractionCursor, max_rows: int) -> list[Record]:
        """
        Read up to ``max_rows`` rows, advancing across references as needed.

        Returns fewer rows only when the last reference is exhausted, in which
        case ``cursor.finished`` is set. Empty references are skipped.

        Args:
            cursor: Job cursor, updated in place
            max_rows: Maximum rows to return

        Returns:
            Decoded rows in stream order

        Raises:
            TransientStreamError: Reconnect budget exhausted
            RepositionMismatch: Replay after reconnect did not line up
        """
        if max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows}")

        rows: list[Record] = []
        try:
            while len(rows) < max_rows and not cursor.finished:
                if cursor.stream is None:
                    if not self._open_next(cursor):
                        break
                exhausted = self._fill_with_retry(cursor, rows, max_rows)
                if exhausted:
                    logger.info(
                        f"Result set {cursor.stream.reference} had {cursor.stream.rows_delivered} records"
                    )
                    cursor.close()
        except Exception:
            cursor.close()
            raise

        if rows:
            logger.info(f"Total number of records processed so far: {cursor.total_rows}")
        return rows

    def _open_next(self, cursor: ExtractionCursor) -> bool:
        if cursor.next_index >= len(cursor.references):
            logger.info(f"Bulk job {cursor.job_id} is finished")
            cursor.finished = True
            return False

        reference = cursor.references[cursor.next_index]
        cursor.next_index += 1
        logger.info(f"Stream resultset for resultId: {reference}")

        cursor.stream = StreamCursor(reference=reference)
        return True

    def _open(self, job_id: str, reference: ResultReference) -> BinaryIO:
        return self._connection.open_result_stream(job_id, reference.batch_id, reference.result_id)

    def _fill_with_retry(self, cursor: ExtractionCursor, rows: list[Record], max_rows: int) -> bool:
        """Fill rows from the current stream, reconnecting on I/O failures.

        Rows appended before a failure stay in ``rows``; the replay after
        reconnecting skips them so they are not delivered twice.
        """
        stream = cursor.stream
        attempts = 0
        while True:
            try:
                if attempts > 0:
                    self._reconnect(cursor, stream)
                elif not stream.is_open:
                    stream.attach(self._open(cursor.job_id, stream.reference))
                return self._fill(cursor, stream, rows, max_rows)
            except RETRYABLE_ERRORS as e:
                if attempts < self._retry_limit:
                    attempts += 1
                    logger.info(
                        f"Exception while fetching data, retrying ({attempts}/{self._retry_limit}): {e}",
                        exc_info=True,
                    )
                    continue
                logger.error(f"Exception while fetching data: {e}", exc_info=True)
                raise TransientStreamError(
                    f"Failed to read result stream after {attempts} reconnects: {e}",
                    attempts=attempts,
                    entity=cursor.entity,
                    job_id=cursor.job_id,
                    batch_id=stream.reference.batch_id,
                    result_id=stream.reference.result_id,
                ) from e

    def _fill(
        self,
        cursor: ExtractionCursor,
        stream: StreamCursor,
        rows: list[Record],
        max_rows: int,
    ) -> bool:
        """Append rows until max_rows is reached (False) or the stream ends (True)."""
        try:
            if not stream.header_read:
                header = next(stream.rows, None)
                if header is None:
                    return True
                stream.header = header
                if cursor.columns is None:
                    cursor.columns = list(header)

            while len(rows) < max_rows:
                raw = next(stream.rows, None)
                if raw is None:
                    return True
                rows.append(csv_to_record(stream.header, raw))
                stream.rows_delivered += 1
                stream.last_row = raw
                cursor.total_rows += 1
            return False
        except (csv.Error, UnicodeDecodeError) as e:
            raise PermanentError(
                f"Malformed result stream: {e}",
                entity=cursor.entity,
                job_id=cursor.job_id,
                batch_id=stream.reference.batch_id,
                result_id=stream.reference.result_id,
            ) from e

    def _reconnect(self, cursor: ExtractionCursor, stream: StreamCursor) -> None:
        """Reopen the reference and replay forward to the last delivered row."""
        stream.close()
        stream.attach(self._open(cursor.job_id, stream.reference))

        # nothing consumed yet, the fresh stream starts at the header
        if not stream.header_read:
            return

        next(stream.rows, None)

        to_skip = stream.rows_delivered
        logger.info(f"Skipping {to_skip} records on retry")
        last_skipped = None
        for _ in range(to_skip):
            last_skipped = next(stream.rows, None)

        if to_skip > 0 and last_skipped != stream.last_row:
            stream.close()
            raise RepositionMismatch(
                "Repositioning after reconnecting did not point to the expected record",
                skipped=to_skip,
                entity=cursor.entity,
                job_id=cursor.job_id,
                batch_id=stream.reference.batch_id,
                result_id=stream.reference.result_id,
            )
