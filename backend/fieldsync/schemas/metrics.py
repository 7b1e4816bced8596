"""Per-cycle observability records. Ephemeral, never persisted."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ChunkMetrics(BaseModel):
    index: int
    item_count: int
    duration_ms: float


class SaveToLocalDbMetrics(BaseModel):
    correlation_id: Optional[str] = None
    entity: str
    total_items: int
    safe_data_items: int
    skipped_items: int
    chunk_size: int
    chunk_count: int
    chunks: List[ChunkMetrics] = Field(default_factory=list)
    total_duration_ms: float = 0.0
    avg_chunk_duration_ms: float = 0.0
    max_chunk_duration_ms: float = 0.0
    used_chunk_processing: bool = False
    estimated_memory_bytes: int = 0


class EntitySyncMetrics(BaseModel):
    correlation_id: Optional[str] = None
    entity: str
    pulled: int = 0
    pages: int = 0
    duration_ms: float = 0.0


class SyncCycleMetrics(BaseModel):
    correlation_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    entities: List[EntitySyncMetrics] = Field(default_factory=list)
    saves: List[SaveToLocalDbMetrics] = Field(default_factory=list)

    @property
    def total_items(self) -> int:
        return sum(s.total_items for s in self.saves)
