"""Result Reference Enumerator - flatten completed batches into an ordered consumption plan."""

import logging
from typing import Iterable

from bulkextract.connection import BulkConnection
from bulkextract.models import BatchInfo, ResultReference

logger = logging.getLogger(__name__)


def enumerate_result_references(
    connection: BulkConnection,
    job_id: str,
    batches: Iterable[BatchInfo],
) -> list[ResultReference]:
    """
    Collect the result references of every completed batch.

    Order is batch order, then the server's order within each batch.
    Batches in any other state (e.g. the NotProcessed parent of a chunked
    job) contribute nothing.

    Args:
        connection: Remote bulk API
        job_id: Owning job
        batches: Batches in job order

    Returns:
        Flat list of result references
    """
    references: list[ResultReference] = []
    for batch in batches:
        if not batch.is_completed:
            logger.debug(f"Skipping batch {batch.id} in state {batch.state.value}")
            continue
        batch_refs = connection.list_result_references(job_id, batch.id)
        logger.debug(f"Batch {batch.id} produced {len(batch_refs)} results")
        references.extend(batch_refs)

    logger.info(f"QueryResultList: {[str(r) for r in references]}")
    return references
