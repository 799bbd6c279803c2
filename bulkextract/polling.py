"""
Batch status polling.

Polling is synchronous: one status request, then sleep, then the next. The
sleep function and clock are injected so that tests can drive state
transitions without real delay.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from bulkextract.connection import BulkConnection
from bulkextract.models import BatchInfo, BatchState

logger = logging.getLogger(__name__)

MAX_POLL_INTERVAL_SECS = 600
BASE_POLL_INTERVAL_SECS = 30
ROWS_PER_INTERVAL_STEP = 10000
SECS_PER_INTERVAL_STEP = 2

# Terminal states for a batch we wait on
SETTLED_STATES = frozenset({BatchState.COMPLETED, BatchState.FAILED})


def poll_interval_seconds(expected_rows_per_batch: int) -> int:
    """
    Compute the batch polling interval.

    min(600, 30 + ceil(expected_rows_per_batch / 10000) * 2)

    Args:
        expected_rows_per_batch: Chunk size when PK chunking, else the full
            expected record count

    Returns:
        Interval in seconds
    """
    expected = max(0, int(expected_rows_per_batch))
    steps = math.ceil(expected / ROWS_PER_INTERVAL_STEP)
    return min(MAX_POLL_INTERVAL_SECS, BASE_POLL_INTERVAL_SECS + steps * SECS_PER_INTERVAL_STEP)


@dataclass
class BatchPoller:
    """
    Drives one batch to a settled state by polling its status.

    Attributes:
        connection: Remote bulk API
        interval: Seconds between status requests
        sleep: Blocking sleep function (time.sleep in production)
        clock: Monotonic clock used for elapsed-time logging
    """
    connection: BulkConnection
    interval: int
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    polls: int = field(default=0, init=False)

    def wait(
        self,
        job_id: str,
        batch_id: str,
        until: Iterable[BatchState] = SETTLED_STATES,
    ) -> BatchInfo:
        """
        Poll a batch until its state is one of ``until``.

        The first status request is made immediately; each further request
        follows a sleep of ``interval`` seconds.

        Args:
            job_id: Owning job
            batch_id: Batch to wait on
            until: States that end the wait

        Returns:
            The BatchInfo observed in a settled state
        """
        stop_states = frozenset(until)
        started = self.clock()
        self.polls = 0

        batch = self._refresh(job_id, batch_id)
        while batch.state not in stop_states:
            self.sleep(self.interval)
            batch = self._refresh(job_id, batch_id)
            logger.info(f"Waiting for bulk batch {batch_id} (state={batch.state.value})")

        elapsed = self.clock() - started
        logger.debug(
            f"Batch {batch_id} settled in state {batch.state.value} "
            f"after {self.polls} polls, {elapsed:.1f}s"
        )
        return batch

    def _refresh(self, job_id: str, batch_id: str) -> BatchInfo:
        self.polls += 1
        batch = self.connection.get_batch_status(job_id, batch_id)
        logger.debug(f"Bulk batch info: {batch}")
        return batch
