from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID
from datetime import datetime

class ReasonRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)

class OptionalReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)

class SelectWinnerRequest(BaseModel):
    force: bool = False
    reason: str | None = Field(default=None, max_length=255)

class ApproveResponse(BaseModel):
    giveaway_id: UUID
    status: str
    server_seed_hash: str

class StatusResponse(BaseModel):
    giveaway_id: UUID
    status: str

class AuditEntryPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_id: str
    action: str
    target_type: str
    target_id: str
    old_values: dict | None = None
    new_values: dict | None = None
    reason: str | None = None
    request_id: str | None = None
    created_at: datetime
