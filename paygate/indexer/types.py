"""
Core types for event indexing.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class IndexerStatus(Enum):
    """Status of a chain watcher."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class ProcessingOutcome(Enum):
    """Result of processing one decoded event."""
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    ANOMALY = "anomaly"
    DEFERRED = "deferred"


@dataclass
class ProcessingStats:
    """Statistics for one watcher generation."""
    logs_from_subscription: int = 0
    logs_from_backfill: int = 0
    events_recorded: int = 0
    duplicates: int = 0
    anomalies: int = 0
    deferred: int = 0
    decode_errors: int = 0
    processing_errors: int = 0
    backfill_ticks: int = 0
    failed_ticks: int = 0
    last_tick_at: Optional[datetime] = None
    start_time: Optional[datetime] = None

    def count_outcome(self, outcome: ProcessingOutcome) -> None:
        if outcome == ProcessingOutcome.RECORDED:
            self.events_recorded += 1
        elif outcome == ProcessingOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome == ProcessingOutcome.DEFERRED:
            self.deferred += 1
        else:
            self.anomalies += 1


@dataclass
class ChainStatus:
    """Snapshot of one watcher for status reporting."""
    chain_id: int
    chain_name: str
    status: IndexerStatus
    is_running: bool
    last_processed_block: Optional[int]
    error: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChainOperationResult:
    """Per-chain result of a fleet start or stop."""
    chain_id: int
    chain_name: str
    success: bool
    error: Optional[str] = None
