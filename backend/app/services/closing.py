from __future__ import annotations
from datetime import datetime
from uuid import UUID
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import FairdrawError, InvalidTransition, NoEligibleEntries, NotFound, NotYetClosed
from app.models.fairness import FairnessProof
from app.models.giveaway import Giveaway
from app.services import audit, selection
from app.services.clock import as_utc, utcnow

log = structlog.get_logger()


async def close_and_draw(session: AsyncSession, giveaway_id: UUID, now: datetime | None = None) -> FairnessProof | None:
    """
    Reveal, snapshot and draw for a giveaway whose entry window has passed.
    Safe to call repeatedly and from concurrent triggers: every step is idempotent.
    Returns the current proof, or None when nobody entered (the giveaway is cancelled).
    """
    now = now or utcnow()
    g = await session.get(Giveaway, giveaway_id, populate_existing=True)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    if g.status == "completed":
        return await selection.current_proof(session, giveaway_id)
    if g.status != "active":
        raise InvalidTransition(f"Cannot close a giveaway that is {g.status}", giveaway_id=str(giveaway_id))
    if as_utc(g.closes_at) > now:
        raise NotYetClosed("Giveaway is still open", giveaway_id=str(giveaway_id))

    try:
        proof, _created = await selection.select_winner(session, giveaway_id, now=now)
    except NoEligibleEntries:
        await session.rollback()
        res = await session.execute(
            update(Giveaway).where(Giveaway.id == giveaway_id, Giveaway.status == "active").values(status="cancelled")
        )
        if res.rowcount == 1:
            audit.record(session, actor_id=audit.SYSTEM_ACTOR, action="close_no_entries", target_type="giveaway",
                         target_id=giveaway_id, old={"status": "active"}, new={"status": "cancelled"})
            await session.commit()
            log.info("giveaway_cancelled_no_entries", giveaway_id=str(giveaway_id))
        return None
    return proof


async def close_due(session: AsyncSession, now: datetime | None = None, limit: int = 100) -> dict:
    """Sweep active giveaways past their closing time. One failure does not stop the sweep."""
    now = now or utcnow()
    due = (await session.execute(
        select(Giveaway.id)
        .where(Giveaway.status == "active", Giveaway.closes_at <= now)
        .order_by(Giveaway.closes_at.asc())
        .limit(limit)
    )).scalars().all()

    summary = {"due": len(due), "drawn": 0, "cancelled": 0, "errors": 0}
    for giveaway_id in due:
        try:
            proof = await close_and_draw(session, giveaway_id, now)
        except FairdrawError as e:
            await session.rollback()
            summary["errors"] += 1
            log.error("close_failed", giveaway_id=str(giveaway_id), error=e.message, kind=e.kind)
            continue
        if proof is None:
            summary["cancelled"] += 1
        else:
            summary["drawn"] += 1
    if due:
        log.info("close_sweep_done", **summary)
    return summary
