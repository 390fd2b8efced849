from __future__ import annotations
from datetime import datetime
from uuid import UUID
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    Conflict, GiveawayFrozen, NoEligibleEntries, NotFound, PayoutInFlight, ReasonRequired,
)
from app.models.fairness import FairnessProof
from app.models.giveaway import Entry, Giveaway
from app.models.payout import Payout
from app.services import audit
from app.services.clock import utcnow
from app.services.commitment import get_commitment, reveal
from app.services.draw import VerificationReport, compute_draw, verify_draw
from app.services.snapshot import build_snapshot, get_snapshot, load_ranges

log = structlog.get_logger()


def proof_as_dict(p: FairnessProof) -> dict:
    return {
        "id": str(p.id),
        "giveaway_id": str(p.giveaway_id),
        "draw_number": p.draw_number,
        "server_seed": p.server_seed,
        "server_seed_hash": p.server_seed_hash,
        "snapshot_digest": p.snapshot_digest,
        "excluded_entry_ids": list(p.excluded_entry_ids or []),
        "combined_entropy_input": p.combined_entropy_input,
        "derived_hash": p.derived_hash,
        "derived_random_value": p.derived_random_value,
        "eligible_tickets": p.eligible_tickets,
        "winner_entry_id": str(p.winner_entry_id),
        "winner_user_id": str(p.winner_user_id),
        "computed_at": p.computed_at,
        "superseded_at": p.superseded_at,
        "supersede_reason": p.supersede_reason,
    }


async def current_proof(session: AsyncSession, giveaway_id: UUID) -> FairnessProof | None:
    return await session.scalar(
        select(FairnessProof)
        .where(FairnessProof.giveaway_id == giveaway_id, FairnessProof.superseded_at.is_(None))
        .order_by(FairnessProof.draw_number.desc())
        .limit(1)
    )


async def proof_history(session: AsyncSession, giveaway_id: UUID) -> list[FairnessProof]:
    return list((await session.execute(
        select(FairnessProof).where(FairnessProof.giveaway_id == giveaway_id).order_by(FairnessProof.draw_number.asc())
    )).scalars().all())


async def _draw_inputs(session: AsyncSession, g: Giveaway, now: datetime):
    seed = await reveal(session, g.id, now)
    c = await get_commitment(session, g.id)
    snap = await build_snapshot(session, g.id, now)
    ranges = await load_ranges(session, snap.id)
    return seed, c.server_seed_hash, snap, ranges


def _new_proof(g: Giveaway, seed: str, seed_hash: str, digest: str, draw_number: int,
               excluded: list[str], result, now: datetime) -> FairnessProof:
    return FairnessProof(
        giveaway_id=g.id,
        draw_number=draw_number,
        server_seed=seed,
        server_seed_hash=seed_hash,
        snapshot_digest=digest,
        excluded_entry_ids=excluded,
        combined_entropy_input=result.combined_entropy_input,
        derived_hash=result.derived_hash,
        derived_random_value=result.derived_random_value,
        eligible_tickets=result.eligible_tickets,
        winner_entry_id=UUID(result.winner.entry_id),
        winner_user_id=UUID(result.winner.user_id),
        computed_at=now,
    )


async def select_winner(session: AsyncSession, giveaway_id: UUID, *, actor_id: str = audit.SYSTEM_ACTOR,
                        now: datetime | None = None) -> tuple[FairnessProof, bool]:
    """
    Draw 1 for a closed giveaway. At most once: an existing proof, or the proof
    persisted by a concurrent caller, is returned with created=False.
    Returns (proof, created). Commits the session.
    """
    now = now or utcnow()
    existing = await current_proof(session, giveaway_id)
    if existing:
        return existing, False

    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    if g.status == "frozen":
        raise GiveawayFrozen("Giveaway is frozen", giveaway_id=str(giveaway_id))

    seed, seed_hash, snap, ranges = await _draw_inputs(session, g, now)
    result = compute_draw(seed, ranges, 1, [])
    proof = _new_proof(g, seed, seed_hash, snap.digest, 1, [], result, now)
    session.add(proof)

    old_status = g.status
    g.winner_user_id = proof.winner_user_id
    g.winner_selected_at = now
    if g.status == "active":
        g.status = "completed"
    audit.record(
        session, actor_id=actor_id, action="winner_select", target_type="giveaway", target_id=g.id,
        old={"status": old_status, "winner_user_id": None},
        new={"status": g.status, "winner_user_id": proof.winner_user_id, "winner_entry_id": proof.winner_entry_id},
    )
    audit.emit(session, "winner_selected", giveaway_id=g.id, winner_user_id=proof.winner_user_id,
               winner_entry_id=proof.winner_entry_id, draw_number=1)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        winner = await current_proof(session, giveaway_id)
        if winner is None:
            raise
        log.info("winner_select_lost_race", giveaway_id=str(giveaway_id), proof_id=str(winner.id))
        return winner, False

    log.info("winner_selected", giveaway_id=str(giveaway_id), proof_id=str(proof.id),
             winner_entry_id=str(proof.winner_entry_id), derived_random_value=proof.derived_random_value)
    return proof, True


async def _prize_outstanding(session: AsyncSession, giveaway_id: UUID) -> bool:
    """A prize payout that is in flight, or succeeded and not reversed."""
    prizes = (await session.execute(
        select(Payout).where(
            Payout.giveaway_id == giveaway_id,
            Payout.payout_type == "winner_prize",
            Payout.status.in_(("pending", "processing", "succeeded")),
        )
    )).scalars().all()
    for p in prizes:
        if p.status != "succeeded":
            return True
        reversed_ = await session.scalar(
            select(func.count()).select_from(Payout).where(
                Payout.reverses_payout_id == p.id, Payout.status == "succeeded",
            )
        )
        if not reversed_:
            return True
    return False


async def force_reselect(session: AsyncSession, giveaway_id: UUID, reason: str, *, actor_id: str,
                         now: datetime | None = None) -> FairnessProof:
    """
    Supersede the current proof with draw n+1. Earlier winners and entries refunded
    since the snapshot are excluded; the exclusions are part of the new proof.
    """
    now = now or utcnow()
    if not reason or not reason.strip():
        raise ReasonRequired("A reason is required to force reselection")
    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    if g.status == "frozen":
        raise GiveawayFrozen("Giveaway is frozen", giveaway_id=str(giveaway_id))
    previous = await current_proof(session, giveaway_id)
    if not previous:
        raise NotFound("No winner has been selected yet", giveaway_id=str(giveaway_id))

    if await _prize_outstanding(session, giveaway_id):
        raise PayoutInFlight("Prize payout already initiated; reverse it before reselecting",
                             giveaway_id=str(giveaway_id))

    seed, seed_hash, snap, ranges = await _draw_inputs(session, g, now)
    history = await proof_history(session, giveaway_id)
    snapshot_entry_ids = {r.entry_id for r in ranges}
    refunded = (await session.execute(
        select(Entry.id).where(Entry.giveaway_id == giveaway_id, Entry.payment_status == "refunded")
    )).scalars().all()
    excluded = sorted({str(p.winner_entry_id) for p in history} | ({str(e) for e in refunded} & snapshot_entry_ids))
    draw_number = max(p.draw_number for p in history) + 1

    try:
        result = compute_draw(seed, ranges, draw_number, excluded)
    except ValueError:
        raise NoEligibleEntries("No eligible entries left for reselection", giveaway_id=str(giveaway_id))

    superseded = await session.execute(
        update(FairnessProof)
        .where(FairnessProof.id == previous.id, FairnessProof.superseded_at.is_(None))
        .values(superseded_at=now, supersede_reason=reason.strip()[:255])
    )
    if superseded.rowcount != 1:
        await session.rollback()
        raise Conflict("Winner was reselected concurrently", giveaway_id=str(giveaway_id))

    proof = _new_proof(g, seed, seed_hash, snap.digest, draw_number, excluded, result, now)
    session.add(proof)
    g.winner_user_id = proof.winner_user_id
    g.winner_selected_at = now
    audit.record(
        session, actor_id=actor_id, action="winner_reselect", target_type="giveaway", target_id=g.id,
        old={"winner_user_id": previous.winner_user_id, "winner_entry_id": previous.winner_entry_id,
             "proof_id": previous.id, "draw_number": previous.draw_number},
        new={"winner_user_id": proof.winner_user_id, "winner_entry_id": proof.winner_entry_id,
             "draw_number": draw_number, "excluded_entry_ids": excluded},
        reason=reason.strip(),
    )
    audit.emit(session, "winner_selected", giveaway_id=g.id, winner_user_id=proof.winner_user_id,
               winner_entry_id=proof.winner_entry_id, draw_number=draw_number,
               previous_winner_user_id=previous.winner_user_id)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("Winner was reselected concurrently", giveaway_id=str(giveaway_id))

    log.info("winner_reselected", giveaway_id=str(giveaway_id), draw_number=draw_number,
             previous_entry_id=str(previous.winner_entry_id), winner_entry_id=str(proof.winner_entry_id))
    return proof


async def verify_proof(session: AsyncSession, proof_id: UUID) -> VerificationReport:
    p = await session.get(FairnessProof, proof_id)
    if not p:
        raise NotFound("Proof not found", proof_id=str(proof_id))
    snap = await get_snapshot(session, p.giveaway_id)
    if not snap:
        raise NotFound("Snapshot missing for proof", proof_id=str(proof_id))
    return verify_draw(proof_as_dict(p), await load_ranges(session, snap.id))
