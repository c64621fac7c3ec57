"""Audio transcription and usage report schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class TranscriptionRequest(BaseModel):
    url: str = Field(..., min_length=1)


class TranscriptionResponse(BaseModel):
    text: str


class UsageTotals(BaseModel):
    cost: float
    tokens: int
    requests: int


class UsageRecordItem(BaseModel):
    id: int
    model_name: str
    token_count: int
    cost: float
    free_tier: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class UsageResponse(BaseModel):
    currency: str
    balance: float
    request_count: int
    total: UsageTotals
    today: UsageTotals
    yesterday: UsageTotals
    range: UsageTotals | None = None
    recent: list[UsageRecordItem]
