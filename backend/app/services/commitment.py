from __future__ import annotations
from datetime import datetime
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AlreadyCommitted, CommitmentTooLate, NoCommitment, NotFound, NotYetClosed
from app.models.fairness import FairnessCommitment
from app.models.giveaway import Giveaway
from app.services.clock import utcnow, as_utc
from app.services.draw import generate_seed, hash_seed

log = structlog.get_logger()

CLOSED_STATUSES = ("completed",)


def is_closed(g: Giveaway, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return g.status in CLOSED_STATUSES or as_utc(g.closes_at) <= now


async def _giveaway(session: AsyncSession, giveaway_id: UUID) -> Giveaway:
    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    return g


async def get_commitment(session: AsyncSession, giveaway_id: UUID) -> FairnessCommitment | None:
    return await session.scalar(select(FairnessCommitment).where(FairnessCommitment.giveaway_id == giveaway_id))


async def commit(session: AsyncSession, giveaway_id: UUID, now: datetime | None = None) -> tuple[str, str]:
    """
    Generate and persist a 256-bit server seed; only its hash is ever exposed before close.
    Returns (server_seed, server_seed_hash). Commits the session.
    """
    now = now or utcnow()
    g = await _giveaway(session, giveaway_id)
    if as_utc(g.closes_at) <= now:
        raise CommitmentTooLate("Seed must be committed before the giveaway closes", giveaway_id=str(giveaway_id))
    if await get_commitment(session, giveaway_id):
        raise AlreadyCommitted("Seed already committed", giveaway_id=str(giveaway_id))

    seed = generate_seed()
    seed_hash = hash_seed(seed)
    session.add(FairnessCommitment(
        giveaway_id=giveaway_id, server_seed=seed, server_seed_hash=seed_hash, committed_at=now,
    ))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise AlreadyCommitted("Seed already committed", giveaway_id=str(giveaway_id))
    log.info("seed_committed", giveaway_id=str(giveaway_id), server_seed_hash=seed_hash)
    return seed, seed_hash


async def public_commitment(session: AsyncSession, giveaway_id: UUID, now: datetime | None = None) -> dict:
    """What anyone may see: the hash always, the seed only once it has been revealed after close."""
    c = await get_commitment(session, giveaway_id)
    if not c:
        raise NoCommitment("No seed committed for this giveaway", giveaway_id=str(giveaway_id))
    g = await _giveaway(session, giveaway_id)
    revealed = c.revealed_at is not None and is_closed(g, now)
    return {
        "giveaway_id": giveaway_id,
        "server_seed_hash": c.server_seed_hash,
        "committed_at": c.committed_at,
        "revealed_at": c.revealed_at if revealed else None,
        "server_seed": c.server_seed if revealed else None,
    }


async def reveal(session: AsyncSession, giveaway_id: UUID, now: datetime | None = None) -> str:
    """Return the committed seed once the giveaway has closed. Stamps revealed_at on first reveal."""
    now = now or utcnow()
    g = await _giveaway(session, giveaway_id)
    c = await get_commitment(session, giveaway_id)
    if not c:
        raise NoCommitment("No seed committed for this giveaway", giveaway_id=str(giveaway_id))
    if not is_closed(g, now):
        raise NotYetClosed("Giveaway has not closed; seed stays sealed", giveaway_id=str(giveaway_id))
    if c.revealed_at is None:
        c.revealed_at = now
        await session.commit()
        log.info("seed_revealed", giveaway_id=str(giveaway_id))
    return c.server_seed
