from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID
from datetime import datetime

class EscrowPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    giveaway_id: UUID
    gross_collected: int
    available_amount: int
    reserved_amount: int
    paid_out_amount: int
    halted: bool
    halted_reason: str | None = None
    updated_at: datetime

class ReconciliationReport(BaseModel):
    giveaway_id: UUID
    gross_collected: int
    available_amount: int
    reserved_amount: int
    paid_out_amount: int
    journal_credits: int
    journal_paid_out: int
    succeeded_payouts_total: int
    halted: bool
    consistent: bool
    mismatches: list[str]

class ResumeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)
