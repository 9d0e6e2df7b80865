from typing import Any

from pydantic import BaseModel, Field


class WorkItem(BaseModel):
    id: str = Field(min_length=1)
    payload_ref: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class PendingBatch(BaseModel):
    items: list[WorkItem]
    count: int = Field(ge=0)


class StatsRecord(BaseModel):
    credential_mask: str
    success: bool
    error_message: str | None = Field(default=None, max_length=200)
    item_id: str | None = None
    duration_ms: int = Field(ge=0)
    model_id: str
