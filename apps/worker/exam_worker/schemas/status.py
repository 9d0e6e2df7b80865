from datetime import datetime

from pydantic import BaseModel


class KeyStatsItem(BaseModel):
    masked_key: str
    backoff_ms: int
    call_count: int
    success_count: int
    failure_count: int
    success_rate: float


class KeyStatsResponse(BaseModel):
    keys: list[KeyStatsItem]
    total_calls: int
    total_success: int
    total_failure: int


class RoundSummaryItem(BaseModel):
    round_no: int
    processed: int
    successful: int
    failed: int
    cancelled: int
    retry_count: int
    finished_at: datetime


class RoundsResponse(BaseModel):
    items: list[RoundSummaryItem]
