"""
Chunk Coordinator - wait for the child batches produced by PK chunking.

When the server splits the submitted batch, the submitted batch moves to
NotProcessed and the job gains one batch per chunk. The first batch in the
job's list is the superseded parent and is never polled; every other batch
is polled to Completed or Failed, stopping at the first failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from bulkextract.models import BatchInfo
from bulkextract.polling import BatchPoller

logger = logging.getLogger(__name__)


@dataclass
class ChunkWaitResult:
    """
    Outcome of waiting on chunk batches.

    Attributes:
        last: Last batch examined (the failed one if any failed), None when
            the job had no child batches
        settled: Refreshed child batches, in job order, up to and including last
    """
    last: Optional[BatchInfo] = None
    settled: list[BatchInfo] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.last is not None and self.last.is_failed


class ChunkCoordinator:
    """Polls every chunk batch of a PK-chunked job to completion."""

    def __init__(self, poller: BatchPoller):
        self._poller = poller

    def wait(self, job_id: str, batches: list[BatchInfo]) -> ChunkWaitResult:
        """
        Wait for all batches other than the first.

        Args:
            job_id: Owning job
            batches: The job's full batch list, parent first

        Returns:
            ChunkWaitResult with the last batch examined
        """
        result = ChunkWaitResult()
        children = batches[1:]
        logger.info(f"Waiting for {len(children)} PK chunking batches of job {job_id}")

        for batch in children:
            settled = self._poller.wait(job_id, batch.id)
            result.settled.append(settled)
            result.last = settled
            if settled.is_failed:
                logger.error(f"PK chunking batch {settled.id} failed: {settled.state_message}")
                break

        return result
