"""
Remote service interfaces.

This module defines the protocols an authenticated session with the remote
service must implement. Authentication and the HTTP transport live outside
bulkextract; callers hand in objects satisfying these protocols.

- BulkConnection: the asynchronous job/batch API used for bulk export
- QueryApi: the synchronous REST query API used for record counts,
  high watermarks and the soft-delete fallback
"""

from typing import Any, BinaryIO, Protocol, runtime_checkable

from bulkextract.models import BatchInfo, JobInfo, ResultReference


@runtime_checkable
class BulkConnection(Protocol):
    """
    Protocol for the remote bulk job API.

    Batch states are the closed set in models.BatchState. Implementations
    raise OSError (or TransientStreamError) for transport failures while a
    result stream is being read; those are the only failures that are retried.
    """

    def create_job(self, job: JobInfo) -> JobInfo:
        """
        Create a bulk job.

        PK chunking is requested beforehand via enable_pk_chunking().

        Args:
            job: Job template (entity, operation, concurrency, content type)

        Returns:
            JobInfo with the server-assigned id
        """
        ...

    def enable_pk_chunking(self, chunk_size: int) -> None:
        """Request server-side PK chunking with the given chunk size for jobs created afterwards."""
        ...

    def get_job_status(self, job_id: str) -> JobInfo:
        ...

    def close_job(self, job_id: str) -> JobInfo:
        ...

    def submit_batch(self, job_id: str, query: bytes) -> BatchInfo:
        """
        Submit the query as a batch of the job.

        Args:
            job_id: Owning job
            query: UTF-8 encoded query text

        Returns:
            BatchInfo for the new batch
        """
        ...

    def get_batch_status(self, job_id: str, batch_id: str) -> BatchInfo:
        ...

    def list_batches(self, job_id: str) -> list[BatchInfo]:
        """All batches of the job, in server order. The first is the submitted batch."""
        ...

    def list_result_references(self, job_id: str, batch_id: str) -> list[ResultReference]:
        ...

    def open_result_stream(self, job_id: str, batch_id: str, result_id: str) -> BinaryIO:
        """
        Open one result as a byte stream of CSV text.

        The caller owns the returned stream and closes it.
        """
        ...


@runtime_checkable
class QueryApi(Protocol):
    """
    Protocol for the synchronous REST query API.

    Responses are decoded JSON objects with ``totalSize``, ``done``,
    ``records`` and, while ``done`` is false, ``nextRecordsUrl``.
    """

    def query(self, soql: str, include_deleted: bool = False) -> dict[str, Any]:
        """
        Run a query and return the first page.

        Args:
            soql: Query text
            include_deleted: Use the queryAll resource so deleted rows are visible
        """
        ...

    def query_more(self, next_records_url: str) -> dict[str, Any]:
        """Fetch the page behind a ``nextRecordsUrl``."""
        ...
