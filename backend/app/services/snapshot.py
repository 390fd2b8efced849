from __future__ import annotations
from datetime import datetime
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NoEligibleEntries, NotFound, NotYetClosed
from app.models.fairness import EntrySnapshot, SnapshotRange
from app.models.giveaway import Entry, Giveaway
from app.services.clock import utcnow
from app.services.commitment import is_closed
from app.services.draw import TicketRange, build_ranges, check_coverage, snapshot_digest

log = structlog.get_logger()

ELIGIBLE_PAYMENT_STATUSES = ("completed", "not_required")


async def get_snapshot(session: AsyncSession, giveaway_id: UUID) -> EntrySnapshot | None:
    return await session.scalar(select(EntrySnapshot).where(EntrySnapshot.giveaway_id == giveaway_id))


async def load_ranges(session: AsyncSession, snapshot_id: UUID) -> list[TicketRange]:
    rows = (await session.execute(
        select(SnapshotRange).where(SnapshotRange.snapshot_id == snapshot_id).order_by(SnapshotRange.position.asc())
    )).scalars().all()
    return [TicketRange(str(r.entry_id), str(r.user_id), int(r.range_start), int(r.range_end)) for r in rows]


async def build_snapshot(session: AsyncSession, giveaway_id: UUID, now: datetime | None = None) -> EntrySnapshot:
    """
    Freeze the ordered eligible entries of a closed giveaway. Idempotent: an existing
    snapshot is returned as-is, including to the loser of a concurrent build.
    Commits the session.
    """
    now = now or utcnow()
    existing = await get_snapshot(session, giveaway_id)
    if existing:
        return existing

    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    if not is_closed(g, now):
        raise NotYetClosed("Entries are still open", giveaway_id=str(giveaway_id))

    entries = (await session.execute(
        select(Entry)
        .where(
            Entry.giveaway_id == giveaway_id,
            Entry.payment_status.in_(ELIGIBLE_PAYMENT_STATUSES),
            Entry.ticket_count > 0,
        )
        .order_by(Entry.created_at.asc(), Entry.id.asc())
    )).scalars().all()
    # created_at ties break on the canonical id string so every dialect agrees
    entries = sorted(entries, key=lambda e: (e.created_at, str(e.id)))

    ranges = build_ranges((str(e.id), str(e.user_id), e.ticket_count) for e in entries)
    total = check_coverage(ranges)
    if total == 0:
        raise NoEligibleEntries("No eligible entries to draw from", giveaway_id=str(giveaway_id))

    snap = EntrySnapshot(
        giveaway_id=giveaway_id,
        total_tickets=total,
        entry_count=len(ranges),
        digest=snapshot_digest(ranges),
        taken_at=now,
    )
    session.add(snap)
    try:
        await session.flush()
        for pos, r in enumerate(ranges):
            session.add(SnapshotRange(
                snapshot_id=snap.id, position=pos, entry_id=UUID(r.entry_id), user_id=UUID(r.user_id),
                range_start=r.start, range_end=r.end,
            ))
        await session.commit()
    except IntegrityError:
        await session.rollback()
        winner = await get_snapshot(session, giveaway_id)
        if winner is None:
            raise
        return winner

    log.info("snapshot_frozen", giveaway_id=str(giveaway_id), entries=len(ranges), total_tickets=total, digest=snap.digest)
    return snap
