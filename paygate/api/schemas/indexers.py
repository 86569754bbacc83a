"""
Schemas for indexer status and control responses.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from paygate.indexer.types import ChainOperationResult, ChainStatus


class IndexerStats(BaseModel):
    """Counters of one watcher generation."""
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


class ChainStatusSchema(BaseModel):
    """Status of one chain watcher."""
    chain_id: int
    chain_name: str
    status: str = Field(description="stopped, starting, running, stopping or failed")
    is_running: bool
    last_processed_block: Optional[int] = None
    error: Optional[str] = None
    stats: IndexerStats = Field(default_factory=IndexerStats)

    @classmethod
    def from_status(cls, status: ChainStatus) -> "ChainStatusSchema":
        return cls(
            chain_id=status.chain_id,
            chain_name=status.chain_name,
            status=status.status.value,
            is_running=status.is_running,
            last_processed_block=status.last_processed_block,
            error=status.error,
            stats=IndexerStats(**status.stats),
        )


class ManagerSummary(BaseModel):
    is_running: bool
    total_indexers: int
    running_indexers: int


class IndexerStatusData(BaseModel):
    """Payload of GET /indexers/status."""
    manager: ManagerSummary
    chains: List[ChainStatusSchema]


class ChainOperationResultSchema(BaseModel):
    """Per-chain result of a fleet operation."""
    chain_id: int
    chain_name: str
    success: bool
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: ChainOperationResult) -> "ChainOperationResultSchema":
        return cls(
            chain_id=result.chain_id,
            chain_name=result.chain_name,
            success=result.success,
            error=result.error,
        )
