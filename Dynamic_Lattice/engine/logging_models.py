import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field


def new_log_id() -> str:
    """Return a unique identifier for a log entry."""
    return f"log_{uuid.uuid4()}"


class BaseLogEntry(BaseModel):
    """Common metadata for all log entries."""

    log_id: str = Field(default_factory=new_log_id)
    step: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    graph_version: int = 0


class TopologyRebuildPayload(BaseModel):
    outcome: str
    deletion_source: str
    old_nnz: int
    new_nnz: int
    additions_proposed: int
    additions_accepted: int
    additions_dropped: int
    deletions_proposed: int
    deletions_accepted: int
    deletions_dropped: int
    edges_marked: int
    protected_edges: int
    protection_method: str
    phase_ms: Dict[str, float] = Field(default_factory=dict)
    error: Optional[str] = None


class TopologyRebuildEntry(BaseLogEntry):
    event_type: str = "TopologyRebuild"
    payload: TopologyRebuildPayload


class ConservationAuditPayload(BaseModel):
    energy_before: float
    energy_transferred: float
    dying_edge_count: int
    error: float
    tolerance: float
    is_conserved: bool
    integrity_flags: int


class ConservationAuditEntry(BaseLogEntry):
    event_type: str = "ConservationAudit"
    payload: ConservationAuditPayload


class TopKFallbackPayload(BaseModel):
    attempted: str
    method: str
    error: Optional[str] = None
    candidates: int = 0


class TopKFallbackEntry(BaseLogEntry):
    event_type: str = "TopKFallback"
    payload: TopKFallbackPayload
