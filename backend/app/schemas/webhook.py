from __future__ import annotations
from pydantic import BaseModel, ConfigDict
from uuid import UUID
from datetime import datetime

class WebhookAck(BaseModel):
    accepted: bool
    duplicate: bool
    status: str

class DeliveryPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    webhook_id: str
    event_type: str
    status: str
    attempt_count: int
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime

class WebhookStats(BaseModel):
    total: int
    by_status: dict[str, int]
    needs_attention: int

class ReplayResponse(BaseModel):
    delivery_id: UUID
    status: str
