"""
Data model for bulk extraction.

JobInfo -> BatchInfo -> ResultReference -> RecordBatch

Lifecycle:
1. JobInfo: the server-side asynchronous export job (Open -> Closed)
2. BatchInfo: one query submission within the job, or one of the pieces the
   server produced when PK chunking split the primary batch
3. ResultReference: (batch_id, result_id) handle to one paginated chunk of a
   completed batch's output
4. RecordBatch: size-bounded collection of decoded rows handed to the caller
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# A decoded row: column name -> value, in header order
Record = dict[str, Optional[str]]


class BatchState(str, Enum):
    """State of a batch as reported by the server."""
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NOT_PROCESSED = "NotProcessed"


class JobState(str, Enum):
    """Lifecycle state of a bulk job."""
    OPEN = "Open"
    CLOSED = "Closed"
    ABORTED = "Aborted"
    FAILED = "Failed"


class JobOperation(str, Enum):
    """Bulk query operation.

    QUERY_ALL also returns logically deleted and archived rows.
    """
    QUERY = "query"
    QUERY_ALL = "queryAll"


class ConcurrencyMode(str, Enum):
    PARALLEL = "Parallel"
    SERIAL = "Serial"


class ContentType(str, Enum):
    CSV = "CSV"


@dataclass(frozen=True)
class JobInfo:
    """
    A bulk job as known to the server.

    Attributes:
        id: Server-assigned job id (None until the job is created)
        entity: Target entity (object) name
        operation: query or queryAll
        concurrency_mode: Always parallel for extraction jobs
        content_type: Result encoding, always CSV
        state: Lifecycle state
    """
    entity: str
    operation: JobOperation = JobOperation.QUERY
    concurrency_mode: ConcurrencyMode = ConcurrencyMode.PARALLEL
    content_type: ContentType = ContentType.CSV
    id: Optional[str] = None
    state: JobState = JobState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == JobState.CLOSED


@dataclass(frozen=True)
class BatchInfo:
    """
    A batch within a bulk job.

    Attributes:
        id: Server-assigned batch id
        job_id: Owning job id
        state: Current state
        state_message: Server-provided detail (failure reason for Failed)
    """
    id: str
    job_id: str
    state: BatchState = BatchState.QUEUED
    state_message: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.state == BatchState.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.state == BatchState.FAILED


@dataclass(frozen=True)
class ResultReference:
    """Composite key of one paginated result chunk of a completed batch."""
    batch_id: str
    result_id: str

    def __str__(self) -> str:
        return f"{self.batch_id}/{self.result_id}"


@dataclass
class RecordBatch:
    """
    Ordered, size-bounded collection of decoded rows.

    Attributes:
        records: Decoded rows in stream order
        total_records: Running total of rows delivered for the whole job
        job_finished: True when every result reference has been consumed
        soft_deleted: True when rows came from the soft-delete fallback query
    """
    records: list[Record] = field(default_factory=list)
    total_records: int = 0
    job_finished: bool = False
    soft_deleted: bool = False

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def to_dict(self) -> dict[str, Any]:
        """Serialize batch metadata (not the rows) for logging."""
        return {
            "size": len(self.records),
            "total_records": self.total_records,
            "job_finished": self.job_finished,
            "soft_deleted": self.soft_deleted,
        }
