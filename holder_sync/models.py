"""Pydantic models for pools, holder metrics and source results."""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class MetricStatus(str, Enum):
    SUCCESS = "success"
    UNKNOWN = "unknown"


class Chain(BaseModel):
    """Chain row as stored by collaborators."""
    id: str
    name: str


class Pool(BaseModel):
    """Tracked pool. Read-only to the pipeline."""
    id: str
    contract_address: Optional[str] = None
    chain_id: str
    is_active: bool = True


class HolderMetric(BaseModel):
    """Current holder count for a pool (one row per pool)."""
    pool_id: str
    holders_count: int = Field(ge=0)
    status: MetricStatus
    updated_at: datetime


class Found(BaseModel):
    """A source produced a strictly positive holder count."""
    found: Literal[True] = True
    count: int = Field(gt=0)
    source: str
    detail: Optional[str] = None  # extraction rule name or page count
    truncated: bool = False


class NotFound(BaseModel):
    """A source could not produce a count. Never a verified zero."""
    found: Literal[False] = False
    source: str
    reason: str
    count: Literal[0] = 0

    @property
    def rate_limited(self) -> bool:
        return self.reason == "rate_limited"


ScrapeResult = Union[Found, NotFound]


class IndexerResult(BaseModel):
    """Outcome of a paginated owners walk."""
    count: int = 0
    pages: int = 0
    truncated: bool = False  # page cap hit with a cursor still pending


class ReconcileOutcome(BaseModel):
    """Value chosen for one pool and whether it was persisted."""
    pool_id: str
    holders_count: int
    status: MetricStatus
    source: Literal["override", "explorer", "indexer", "cache", "previous", "none"]
    written: bool = False
    rate_limited: bool = False
    truncated: bool = False
    network_calls: bool = False


class BatchSummary(BaseModel):
    """Aggregated totals for one batch run."""
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    failed_pools: List[str] = []
    duration_seconds: float = 0.0


class HolderMetricResponse(BaseModel):
    """Response model for /holders/{pool_id}."""
    pool_id: str
    holders_count: int
    status: MetricStatus
    updated_at: datetime


class HealthResponse(BaseModel):
    """Response model for /health endpoint."""
    status: str
    active_pools: int
    batch_in_progress: bool
    indexer_enabled: bool
