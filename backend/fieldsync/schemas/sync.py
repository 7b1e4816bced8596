"""Schemas shared by the sync engine, fast push service and the API."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SyncEntityConfig(BaseModel):
    """Static registration record for one synced entity type."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Entity name, also the mutation queue key")
    table_name: str = Field(..., description="Local table the pulled rows are upserted into")
    api_endpoint: str = Field(..., description="Paginated pull endpoint")
    api_mutation_endpoint: str = Field(..., description="Batch push endpoint")
    batch_size: int = Field(100, gt=0, description="Page size requested from the server")
    priority: int = Field(100, description="Lower values sync first")
    scope: str = Field("all", description="Server-side scope filter ('all' or 'recent')")


class NetworkStatus(BaseModel):
    is_connected: bool
    type: Optional[str] = None


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncError(BaseModel):
    entity: str
    message: str
    entity_id: Optional[str] = None


class SyncResult(BaseModel):
    success: bool
    entity: str
    pulled: int = 0
    saved: int = 0
    skipped: int = 0
    pushed: int = 0
    pages: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    duration_ms: float = 0.0


class PushSummary(BaseModel):
    pushed: int = 0
    failed: int = 0


class SyncReport(BaseModel):
    """Outcome of one full sync cycle (push phase plus every entity pull)."""

    correlation_id: Optional[str] = None
    trigger_type: str = "manual"
    skipped_reason: Optional[str] = None  # 'in_progress', 'offline', 'not_configured'
    pushed: int = 0
    push_failed: int = 0
    push_error: Optional[str] = None
    results: List[SyncResult] = Field(default_factory=list)
    duration_ms: float = 0.0

    @computed_field
    @property
    def success(self) -> bool:
        return self.skipped_reason is None and self.push_error is None and all(r.success for r in self.results)


class SyncState(BaseModel):
    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime] = None
    error: Optional[str] = None
    progress: float = 0.0


class SyncEventType(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    ENTITY_SYNCED = "entity_synced"


class SyncEvent(BaseModel):
    type: SyncEventType
    correlation_id: Optional[str] = None
    entity: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class FastPushResult(BaseModel):
    pushed: int = 0
    failed: int = 0
    coalesced: int = 0
    full_sync_scheduled: bool = False
    deferred: bool = False  # absorbed by an in-flight push, which runs once more afterwards
    offline: bool = False


class FastPushMetrics(BaseModel):
    mutations_coalesced: int = 0
    push_count: int = 0
    full_syncs_throttled: int = 0
    last_push_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None
    scheduled_full_sync_pending: bool = False


class FastPushStatus(BaseModel):
    state: str
    full_sync_state: str
    pending_count: int
    throttle_remaining_ms: float
    metrics: FastPushMetrics


class SyncRunResponse(BaseModel):
    id: int
    trigger_type: str
    correlation_id: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    status: str
    entities_synced: int = 0
    entities_failed: int = 0
    items_pulled: int = 0
    mutations_pushed: int = 0
    mutations_failed: int = 0
    error_message: Optional[str] = None


class ConnectivityUpdate(BaseModel):
    is_connected: bool
    type: Optional[str] = None
