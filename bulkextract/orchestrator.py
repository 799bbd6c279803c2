"""
Job Orchestrator - create the bulk job and drive it to a terminal state.

The orchestrator implements:
- PK chunking decision (eligibility, clamped chunk size, optional count check)
- Job creation (query/queryAll, parallel, CSV) and single-batch submission
- Polling of the submitted batch to Completed, Failed or (when chunking) NotProcessed
- Hand-off to the ChunkCoordinator when the batch was split
- Result reference enumeration for the completed batches
- Idempotent job close

Phases:
    NEW -> CREATED -> SUBMITTED -> [CHUNKING] -> COMPLETED
    SUBMITTED or CHUNKING -> FAILED
    any -> CLOSED (via close())
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional

from bulkextract.chunking import ChunkCoordinator
from bulkextract.config import PK_CHUNKING_MAX_PARTITIONS_LIMIT, BulkConfig
from bulkextract.connection import BulkConnection
from bulkextract.errors import JobFailure
from bulkextract.models import (
    BatchInfo,
    BatchState,
    ConcurrencyMode,
    ContentType,
    JobInfo,
    ResultReference,
)
from bulkextract.polling import SETTLED_STATES, BatchPoller, poll_interval_seconds
from bulkextract.results import enumerate_result_references

logger = logging.getLogger(__name__)


class JobPhase(str, Enum):
    """Local view of where the orchestrator is in the job lifecycle."""
    NEW = "new"
    CREATED = "created"
    SUBMITTED = "submitted"
    CHUNKING = "chunking"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChunkingDecision:
    """
    Whether PK chunking is used for a job, and why.

    Attributes:
        enabled: PK chunking requested from the server
        chunk_size: Clamped chunk size
        expected_record_count: Count used for the decision (None if not known)
        reason: Human-readable explanation for logs and the CLI
    """
    enabled: bool
    chunk_size: int
    expected_record_count: Optional[int]
    reason: str

    @property
    def expected_rows_per_batch(self) -> int:
        if self.enabled:
            return self.chunk_size
        return self.expected_record_count or 0

    @property
    def poll_interval(self) -> int:
        return poll_interval_seconds(self.expected_rows_per_batch)


def decide_chunking(
    config: BulkConfig,
    expected_record_count: Optional[int] = None,
    count_records: Optional[Callable[[], int]] = None,
) -> ChunkingDecision:
    """
    Decide whether to request PK chunking.

    Chunking needs an eligible configuration and either skip_count_check or
    an expected record count above the chunk size. The count is taken from
    ``expected_record_count`` when given, else from ``count_records`` (one
    remote round trip), and is only looked up when it matters.

    Args:
        config: Bulk settings
        expected_record_count: Known record count, if any
        count_records: Lazily runs the record-count query

    Returns:
        ChunkingDecision
    """
    chunk_size = config.chunk_size

    if not config.chunking_eligible:
        reason = "PK chunking not enabled"
        if config.has_user_specified_partitions or config.max_partitions > PK_CHUNKING_MAX_PARTITIONS_LIMIT:
            reason = "PK chunking disabled by partitioning"
        return ChunkingDecision(False, chunk_size, expected_record_count, reason)

    if config.pk_chunking_skip_count_check:
        return ChunkingDecision(True, chunk_size, expected_record_count, "count check skipped")

    if expected_record_count is None and count_records is not None:
        expected_record_count = count_records()

    if expected_record_count is None:
        return ChunkingDecision(False, chunk_size, None, "record count unknown")
    if expected_record_count > chunk_size:
        return ChunkingDecision(
            True,
            chunk_size,
            expected_record_count,
            f"expected {expected_record_count} records > chunk size {chunk_size}",
        )
    return ChunkingDecision(
        False,
        chunk_size,
        expected_record_count,
        f"expected {expected_record_count} records <= chunk size {chunk_size}",
    )


@dataclass
class JobPlan:
    """
    A bulk job that reached Completed, with its consumption plan.

    Attributes:
        job: The created job
        primary_batch: The submitted batch in its final observed state
        batches: Completed batches whose results are consumed, in order
        references: Result references to stream, in order
        chunking: The chunking decision used
    """
    job: JobInfo
    primary_batch: BatchInfo
    batches: list[BatchInfo] = field(default_factory=list)
    references: list[ResultReference] = field(default_factory=list)
    chunking: Optional[ChunkingDecision] = None


class JobOrchestrator:
    """
    Owns one bulk job from creation to close.

    Usage:
        orchestrator = JobOrchestrator(connection, config.bulk)
        try:
            plan = orchestrator.run("Account", "SELECT Id FROM Account")
            ...
        finally:
            orchestrator.close()
    """

    def __init__(
        self,
        connection: BulkConnection,
        config: BulkConfig,
        *,
        count_records: Optional[Callable[[], int]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            connection: Remote bulk API
            config: Bulk settings
            count_records: Runs the record-count query when the chunking
                decision or the poll interval needs it
            sleep: Blocking sleep used between status polls
            clock: Monotonic clock for elapsed-time logging
        """
        self._connection = connection
        self._config = config
        self._count_records = count_records
        self._sleep = sleep
        self._clock = clock
        self._job: Optional[JobInfo] = None
        self._phase = JobPhase.NEW

    @property
    def phase(self) -> JobPhase:
        return self._phase

    @property
    def job(self) -> Optional[JobInfo]:
        return self._job

    def run(
        self,
        entity: str,
        query: str,
        expected_record_count: Optional[int] = None,
    ) -> JobPlan:
        """
        Create the job, submit the query and wait for its results.

        Args:
            entity: Target entity name
            query: Fully composed query text
            expected_record_count: Known record count, if any

        Returns:
            JobPlan with the ordered result references

        Raises:
            JobFailure: If the submitted batch or any chunk batch fails
        """
        if self._phase != JobPhase.NEW:
            raise RuntimeError(f"Job orchestrator already used (phase={self._phase.value})")

        decision = decide_chunking(self._config, expected_record_count, self._count_records)
        if not decision.enabled and decision.expected_record_count is None and self._count_records is not None:
            # unchunked jobs still size the poll interval by the record count
            decision = replace(decision, expected_record_count=self._count_records())
        if decision.enabled:
            logger.info(f"Enabling pk chunking with size {decision.chunk_size} ({decision.reason})")
            self._connection.enable_pk_chunking(decision.chunk_size)
        else:
            logger.info(f"PK chunking off for {entity}: {decision.reason}")

        self._job = self._connection.create_job(
            JobInfo(
                entity=entity,
                operation=self._config.operation,
                concurrency_mode=ConcurrencyMode.PARALLEL,
                content_type=ContentType.CSV,
            )
        )
        self._job = self._connection.get_job_status(self._job.id)
        self._phase = JobPhase.CREATED
        logger.info(f"Created bulk job {self._job.id} for {entity} ({self._job.operation.value})")

        logger.info(f"QUERY: {query}")
        batch = self._connection.submit_batch(self._job.id, query.encode("utf-8"))
        self._phase = JobPhase.SUBMITTED

        interval = decision.poll_interval
        logger.info(f"Bulk api retry interval in seconds: {interval}")
        poller = BatchPoller(self._connection, interval, sleep=self._sleep, clock=self._clock)

        until = set(SETTLED_STATES)
        if decision.enabled:
            until.add(BatchState.NOT_PROCESSED)
        primary = poller.wait(self._job.id, batch.id, until=until)

        batches = self._connection.list_batches(self._job.id)

        if decision.enabled and primary.state == BatchState.NOT_PROCESSED:
            self._phase = JobPhase.CHUNKING
            outcome = ChunkCoordinator(poller).wait(self._job.id, batches)
            if outcome.last is None:
                self._fail(entity, primary, "PK chunking produced no batches for jobId")
            if outcome.failed:
                self._fail(entity, outcome.last, "Failed to get bulk batch info for jobId")
            batches = outcome.settled
        elif primary.is_failed:
            self._fail(entity, primary, "Failed to get bulk batch info for jobId")
        else:
            batches = [primary]

        references = enumerate_result_references(self._connection, self._job.id, batches)
        logger.info(f"Number of bulk api resultSet Ids: {len(references)}")
        self._phase = JobPhase.COMPLETED

        return JobPlan(
            job=self._job,
            primary_batch=primary,
            batches=batches,
            references=references,
            chunking=decision,
        )

    def _fail(self, entity: str, batch: BatchInfo, message: str) -> None:
        self._phase = JobPhase.FAILED
        logger.error(f"Bulk batch failed: {batch}")
        raise JobFailure(
            f"{message} {batch.job_id}",
            state_message=batch.state_message,
            entity=entity,
            job_id=batch.job_id,
            batch_id=batch.id,
        )

    def close(self) -> None:
        """
        Close the bulk job.

        Safe to call more than once, before run() and after failures. A job
        the server already reports as Closed is not closed again.
        """
        if self._job is None or self._job.id is None or self._phase == JobPhase.CLOSED:
            return

        status = self._connection.get_job_status(self._job.id)
        if not status.is_closed:
            logger.info(f"Closing bulk job {self._job.id}")
            status = self._connection.close_job(self._job.id)
        self._job = status
        self._phase = JobPhase.CLOSED
