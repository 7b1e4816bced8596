"""Thin adapter over the embedded database holding the synced entity tables."""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


class LocalStore:
    """Bulk upsert and query primitives for the device-local tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def upsert_rows(self, table_name: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> int:
        """Write all rows with one INSERT OR REPLACE executed as a batch in a single transaction."""
        if not rows:
            return 0
        keys = [f"p{i}" for i in range(len(columns))]
        sql = text(
            f"INSERT OR REPLACE INTO {quote_identifier(table_name)} "
            f"({', '.join(quote_identifier(c) for c in columns)}) "
            f"VALUES ({', '.join(':' + k for k in keys)})"
        )
        params = [dict(zip(keys, row)) for row in rows]
        with self.engine.begin() as conn:
            conn.execute(sql, params)
        log.trace(f"Upserted {len(rows)} row(s) into {table_name}")
        return len(rows)

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result]

    def count(self, table_name: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(text(f"SELECT COUNT(*) FROM {quote_identifier(table_name)}")).scalar_one()
