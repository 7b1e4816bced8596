import json
from typing import Any, Dict, List, Sequence, Tuple

# Appended to every stored row so the host app can tell when it was last refreshed
SYNCED_AT_COLUMN = "synced_at"

StorageRow = Tuple[Any, ...]


class NormalizerService:
    """
    Service responsible for turning remote snapshot items into storage-row
    tuples for the local store.

    The same `build_row` is used on every write path, so a row never depends
    on whether it was written in one bulk statement or in chunks.
    """

    def __init__(self):
        pass  # Stateless: column order comes from the batch being written

    def resolve_columns(self, records: Sequence[Dict[str, Any]]) -> List[str]:
        """Column order is the key order of the first record in the batch."""
        if not records:
            return []
        return list(records[0].keys())

    def to_storage_value(self, value: Any) -> Any:
        """
        Normalizes one field for the embedded store:
        booleans become 1/0, missing or None stays None, nested structures
        are stored as compact JSON text, everything else passes through.
        """
        if isinstance(value, bool):
            return 1 if value else 0
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        return value

    def build_row(self, record: Dict[str, Any], columns: Sequence[str], synced_at: str) -> StorageRow:
        return tuple(self.to_storage_value(record.get(column)) for column in columns) + (synced_at,)

    def storage_columns(self, columns: Sequence[str]) -> List[str]:
        return list(columns) + [SYNCED_AT_COLUMN]
