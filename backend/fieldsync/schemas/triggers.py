"""Push-notification payload and trigger routing schemas."""

from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FULL_SYNC_EVENT = "sync.full_required"


class PushNotificationPayload(BaseModel):
    """Data section of an inbound push notification."""

    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(..., alias="eventType")
    entity: Optional[str] = None
    entity_id: Optional[str] = Field(None, alias="entityId")
    action: Optional[str] = None
    scope_hint: Literal["single", "list", "full"] = Field("list", alias="scopeHint")
    timestamp: Optional[str] = None

    @classmethod
    def from_notification_data(cls, data: Optional[Dict[str, Any]]) -> Optional["PushNotificationPayload"]:
        """Extract the payload from a notification's data dict, or None when it carries no event."""
        if not data:
            return None
        if "data" in data and isinstance(data["data"], dict):
            data = data["data"]
        if not data.get("eventType") and not data.get("event_type"):
            return None
        return cls.model_validate(data)


class TriggerAction(str, Enum):
    SINGLE = "single"
    LIST = "list"
    FULL = "full"


class TriggerOutcome(str, Enum):
    SCHEDULED = "scheduled"
    EXECUTED = "executed"
    BLOCKED = "blocked"
    IGNORED = "ignored"
    FAILED = "failed"


class TriggerDecision(BaseModel):
    key: str
    action: TriggerAction
    entity: Optional[str] = None
    entity_id: Optional[str] = None


class TriggerStats(BaseModel):
    received: int = 0
    scheduled: int = 0
    coalesced: int = 0
    executed: int = 0
    blocked: int = 0
    ignored: int = 0
    failed: int = 0


class TriggerResponse(BaseModel):
    status: TriggerOutcome
    key: Optional[str] = None
    action: Optional[TriggerAction] = None
