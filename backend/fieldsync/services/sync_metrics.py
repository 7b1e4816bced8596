"""Collects per-cycle sync metrics for observability tooling."""

import json
import logging
import secrets
import time
from collections import deque
from typing import Any, Deque, List, Optional, Sequence

from fieldsync.schemas.metrics import EntitySyncMetrics, SaveToLocalDbMetrics, SyncCycleMetrics
from fieldsync.utils.timers import utcnow

log = logging.getLogger(__name__)

MAX_HISTORY = 10


def generate_correlation_id() -> str:
    return f"sync-{int(time.time() * 1000):x}-{secrets.token_hex(3)}"


def estimate_memory_bytes(items: Sequence[Any]) -> int:
    """Rough size of a batch, measured as its JSON encoding."""
    if not items:
        return 0
    try:
        return len(json.dumps(items, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return 0


class SyncMetricsCollector:
    """
    Holds the currently open sync cycle plus a short history of finished ones.
    Save metrics recorded outside a cycle (push-triggered single-entity pulls)
    are still kept in the standalone save history.
    """

    def __init__(self, slow_chunk_threshold_ms: float = 50.0):
        self.slow_chunk_threshold_ms = slow_chunk_threshold_ms
        self._current: Optional[SyncCycleMetrics] = None
        self._history: Deque[SyncCycleMetrics] = deque(maxlen=MAX_HISTORY)
        self._saves: Deque[SaveToLocalDbMetrics] = deque(maxlen=MAX_HISTORY * 10)

    def start_cycle(self, correlation_id: Optional[str] = None) -> str:
        if self._current is not None:
            log.warning(f"Sync cycle {self._current.correlation_id} was never ended, closing it")
            self.end_cycle(error="superseded")
        correlation_id = correlation_id or generate_correlation_id()
        self._current = SyncCycleMetrics(correlation_id=correlation_id, started_at=utcnow())
        log.debug(f"[{correlation_id}] Sync cycle started")
        return correlation_id

    def end_cycle(self, error: Optional[str] = None) -> Optional[SyncCycleMetrics]:
        cycle = self._current
        if cycle is None:
            return None
        cycle.ended_at = utcnow()
        cycle.duration_ms = (cycle.ended_at - cycle.started_at).total_seconds() * 1000
        cycle.error = error
        self._history.append(cycle)
        self._current = None
        log.info(
            f"[{cycle.correlation_id}] Sync cycle finished in {cycle.duration_ms:.0f}ms: "
            f"{len(cycle.entities)} entities, {cycle.total_items} items"
            + (f", error: {error}" if error else "")
        )
        return cycle

    def _belongs_to_current(self, correlation_id: Optional[str]) -> bool:
        return self._current is not None and correlation_id == self._current.correlation_id

    def get_current_correlation_id(self) -> Optional[str]:
        return self._current.correlation_id if self._current else None

    def record_save_to_local_db(self, metrics: SaveToLocalDbMetrics) -> None:
        self._saves.append(metrics)
        if self._belongs_to_current(metrics.correlation_id):
            self._current.saves.append(metrics)

        for chunk in metrics.chunks:
            if chunk.duration_ms > self.slow_chunk_threshold_ms:
                log.warning(
                    f"[{metrics.correlation_id}] Slow chunk {chunk.index + 1}/{metrics.chunk_count} "
                    f"for {metrics.entity}: {chunk.duration_ms:.1f}ms ({chunk.item_count} items)"
                )
        log.debug(
            f"[{metrics.correlation_id}] {metrics.entity}: saved {metrics.safe_data_items}/{metrics.total_items} "
            f"(skipped {metrics.skipped_items}) in {metrics.chunk_count} chunk(s), "
            f"{metrics.total_duration_ms:.1f}ms"
        )

    def record_entity_sync(self, metrics: EntitySyncMetrics) -> None:
        if self._belongs_to_current(metrics.correlation_id):
            self._current.entities.append(metrics)

    def get_history(self) -> List[SyncCycleMetrics]:
        return list(self._history)

    def get_last_cycle(self) -> Optional[SyncCycleMetrics]:
        return self._history[-1] if self._history else None

    def get_save_metrics(self, entity: Optional[str] = None) -> List[SaveToLocalDbMetrics]:
        return [m for m in self._saves if entity is None or m.entity == entity]

    def reset(self) -> None:
        self._current = None
        self._history.clear()
        self._saves.clear()
