"""
Output-writer boundary.

How records are serialized and stored is up to the caller; the CLI writes
JSON Lines through JsonlSink.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Protocol, TextIO, runtime_checkable

from bulkextract.models import RecordBatch

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordSink(Protocol):
    """Protocol for consumers of RecordBatches."""

    def write(self, batch: RecordBatch) -> None:
        ...

    def close(self) -> None:
        ...


class JsonlSink:
    """
    Writes each record as one JSON object per line.

    Soft-deleted batches are written like any other; the records carry the
    soft-delete column themselves.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.records_written = 0
        self.batches_written = 0
        self._file: Optional[TextIO] = None

    def __enter__(self) -> "JsonlSink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def write(self, batch: RecordBatch) -> None:
        if self._file is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "w", encoding="utf-8")
        for record in batch:
            self._file.write(json.dumps(record, default=str))
            self._file.write("\n")
        self.records_written += len(batch)
        self.batches_written += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            logger.info(f"Wrote {self.records_written} records to {self.path}")
