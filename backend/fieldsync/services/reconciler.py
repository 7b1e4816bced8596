import logging
from enum import Enum
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, Field

log = logging.getLogger(__name__)


class ReconciliationStatus(str, Enum):
    SAFE = "safe"                    # remote snapshot overwrites the local row
    PENDING_LOCAL = "pending_local"  # local unsynced edit wins, remote copy discarded this cycle


class ReconciledBatch(BaseModel):
    """Fetched items split by the conflict policy."""
    safe: List[Dict[str, Any]] = Field(default_factory=list)
    skipped: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.safe) + len(self.skipped)


class ReconciliationService:
    """
    Service responsible for reconciling pulled snapshots against the mutation queue.

    Policy: an item whose id has an unacknowledged local mutation is skipped, so a
    pull never clobbers an edit the server has not seen yet. Once the mutation
    completes, the next pull brings the server's copy back in.
    """

    def __init__(self, id_field: str = "id"):
        self.id_field = id_field

    def _item_id(self, item: Dict[str, Any]) -> str:
        value = item.get(self.id_field)
        return "" if value is None else str(value)

    def classify(self, item: Dict[str, Any], pending_ids: Iterable[str]) -> ReconciliationStatus:
        if self._item_id(item) in pending_ids:
            return ReconciliationStatus.PENDING_LOCAL
        return ReconciliationStatus.SAFE

    def partition(self, items: Iterable[Dict[str, Any]], pending_ids: Iterable[str]) -> ReconciledBatch:
        pending_ids = set(pending_ids)
        batch = ReconciledBatch()
        for item in items:
            if pending_ids and self.classify(item, pending_ids) == ReconciliationStatus.PENDING_LOCAL:
                log.trace(f"Skipping remote copy of {self._item_id(item)}: local mutation pending")
                batch.skipped.append(item)
            else:
                batch.safe.append(item)
        return batch
