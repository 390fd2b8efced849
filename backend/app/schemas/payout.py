from __future__ import annotations
from typing import Literal
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID
from datetime import datetime

class PayoutPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    giveaway_id: UUID
    recipient_id: UUID
    payout_type: str
    amount: int
    currency: str
    status: str
    attempt: int
    idempotency_key: str
    entry_id: UUID | None = None
    reverses_payout_id: UUID | None = None
    external_reference: str | None = None
    failure_reason: str | None = None
    initiated_by: str | None = None
    note: str | None = None
    created_at: datetime
    processing_at: datetime | None = None
    completed_at: datetime | None = None

class InitiatePayoutRequest(BaseModel):
    recipient_id: UUID
    payout_type: Literal["winner_prize", "creator_revenue"]
    amount: int = Field(gt=0, description="Amount in cents")
    attempt: int | None = Field(default=None, ge=1)
    note: str | None = Field(default=None, max_length=255)

class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)

class ReverseRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)
