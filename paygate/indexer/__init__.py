"""
Multi-chain gateway event indexing.
"""

from .types import (
    IndexerStatus, ProcessingOutcome, ProcessingStats, ChainStatus, ChainOperationResult
)
from .processor import EventProcessor
from .watcher import ChainWatcher
from .manager import IndexerManager

__all__ = [
    "IndexerStatus",
    "ProcessingOutcome",
    "ProcessingStats",
    "ChainStatus",
    "ChainOperationResult",
    "EventProcessor",
    "ChainWatcher",
    "IndexerManager",
]
