"""
bulkextract - Bulk data extraction engine

Exports entities through an asynchronous bulk job API: creates the job,
waits for it (and its PK chunks), streams every result with reconnect and
replay, and hands records out in size-bounded batches.
"""

__version__ = "0.1.0"


__all__ = [
    "BulkConfig",
    "BulkExtractor",
    "ExtractorConfig",
    "get_bulkextract_home",
    "load_config",
]

from .config import BulkConfig, ExtractorConfig, get_bulkextract_home, load_config
from .extractor import BulkExtractor
