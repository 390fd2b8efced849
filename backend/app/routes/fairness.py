from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_session
from app.schemas.fairness import (
    CommitmentPublic, FairnessRecord, ProofPublic, SnapshotPublic, TicketRangePublic, VerificationPublic,
)
from app.services import commitment, selection, snapshot

router = APIRouter(tags=["fairness"])

@router.get("/giveaways/{giveaway_id}/fairness/commitment", response_model=CommitmentPublic)
async def get_commitment(giveaway_id: UUID, session: AsyncSession = Depends(get_session)):
    return CommitmentPublic(**await commitment.public_commitment(session, giveaway_id))

@router.get("/giveaways/{giveaway_id}/fairness", response_model=FairnessRecord)
async def get_fairness_record(giveaway_id: UUID, session: AsyncSession = Depends(get_session)):
    """Everything needed to re-derive the draw independently. Seeds and proofs appear only after close."""
    public = await commitment.public_commitment(session, giveaway_id)
    snap_out = None
    proofs = []
    if public["server_seed"] is not None:
        snap = await snapshot.get_snapshot(session, giveaway_id)
        if snap:
            ranges = await snapshot.load_ranges(session, snap.id)
            snap_out = SnapshotPublic(
                giveaway_id=giveaway_id,
                total_tickets=snap.total_tickets,
                entry_count=snap.entry_count,
                digest=snap.digest,
                taken_at=snap.taken_at,
                ranges=[TicketRangePublic(entry_id=r.entry_id, user_id=r.user_id, start=r.start, end=r.end)
                        for r in ranges],
            )
        proofs = [ProofPublic.model_validate(p) for p in await selection.proof_history(session, giveaway_id)]
    return FairnessRecord(giveaway_id=giveaway_id, commitment=CommitmentPublic(**public), snapshot=snap_out, proofs=proofs)

@router.get("/fairness/proofs/{proof_id}/verify", response_model=VerificationPublic)
async def verify_proof(proof_id: UUID, session: AsyncSession = Depends(get_session)):
    report = await selection.verify_proof(session, proof_id)
    return VerificationPublic(
        proof_id=proof_id,
        valid=report.valid,
        seed_hash_ok=report.seed_hash_ok,
        snapshot_digest_ok=report.snapshot_digest_ok,
        derivation_ok=report.derivation_ok,
        winner_ok=report.winner_ok,
        recomputed_winner_entry_id=report.recomputed_winner_entry_id,
        errors=list(report.errors),
    )
