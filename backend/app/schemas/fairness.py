from __future__ import annotations
from pydantic import BaseModel, ConfigDict
from uuid import UUID
from datetime import datetime

class CommitmentPublic(BaseModel):
    giveaway_id: UUID
    server_seed_hash: str
    committed_at: datetime
    revealed_at: datetime | None = None
    server_seed: str | None = None  # only after close

class TicketRangePublic(BaseModel):
    entry_id: UUID
    user_id: UUID
    start: int
    end: int  # exclusive

class SnapshotPublic(BaseModel):
    giveaway_id: UUID
    total_tickets: int
    entry_count: int
    digest: str
    taken_at: datetime
    ranges: list[TicketRangePublic]

class ProofPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    giveaway_id: UUID
    draw_number: int
    server_seed: str
    server_seed_hash: str
    snapshot_digest: str
    excluded_entry_ids: list[str]
    combined_entropy_input: str
    derived_hash: str
    derived_random_value: int
    eligible_tickets: int
    winner_entry_id: UUID
    winner_user_id: UUID
    computed_at: datetime
    superseded_at: datetime | None = None
    supersede_reason: str | None = None

class VerificationPublic(BaseModel):
    proof_id: UUID
    valid: bool
    seed_hash_ok: bool
    snapshot_digest_ok: bool
    derivation_ok: bool
    winner_ok: bool
    recomputed_winner_entry_id: str | None = None
    errors: list[str] = []

class FairnessRecord(BaseModel):
    giveaway_id: UUID
    commitment: CommitmentPublic
    snapshot: SnapshotPublic | None = None
    proofs: list[ProofPublic]
