from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from fieldsync.schemas.sync import SyncEntityConfig


class ConnectorError(Exception):
    """Base class for errors raised while talking to the remote API."""


class TransientConnectorError(ConnectorError):
    """Network failure, timeout or server-side error. Safe to retry later."""


class RejectedRequestError(ConnectorError, ValueError):
    """The server understood the request and refused it. Retrying unchanged will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PullPage(BaseModel):
    """One page of a paginated pull response."""
    items: List[Dict[str, Any]] = Field(default_factory=list, description="Remote snapshot rows")
    has_more: bool = Field(False, description="Whether another page follows")
    total: Optional[int] = Field(None, description="Total rows reported by the server")
    next_cursor: Optional[str] = Field(None, description="Cursor for the next page")

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "PullPage":
        """Accept both `items`/`nextCursor` and the older `data`/`cursor` shapes."""
        items = body.get("items")
        if items is None:
            items = body.get("data") or []
        return cls(
            items=items,
            has_more=bool(body.get("hasMore", False)),
            total=body.get("total"),
            next_cursor=body.get("nextCursor") or body.get("cursor"),
        )


class BaseSyncConnector(ABC):
    """Abstract Base Class for the remote source of truth."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    async def fetch_page(
        self,
        entity: SyncEntityConfig,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> PullPage:
        """Fetches one page of remote rows for an entity."""
        pass

    @abstractmethod
    async def fetch_record(self, entity: SyncEntityConfig, entity_id: str) -> Optional[Dict[str, Any]]:
        """Fetches a single remote row, or None when it no longer exists."""
        pass

    @abstractmethod
    async def push_mutations(self, entity: SyncEntityConfig, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Posts a batch of mutations and returns the server's per-mutation results."""
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validates the connection to the remote API."""
        pass

    async def close(self) -> None:
        pass
