"""Periodic full sync schedule schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class ScheduleUpdate(BaseModel):
    interval_minutes: int = Field(..., ge=1, le=24 * 60, description="Minutes between scheduled full syncs")
    enabled: bool = Field(default=True, description="Enable/disable the periodic full sync")


class ScheduleResponse(BaseModel):
    enabled: bool
    interval_minutes: int
    next_run: Optional[str] = None
    running: bool = False
