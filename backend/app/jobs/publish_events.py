from __future__ import annotations
import asyncio
import json
import structlog
from redis import Redis
from sqlalchemy import select, update
from app.config import settings
from app.db import SessionLocal
from app.models.audit import DomainEvent
from app.services.clock import utcnow

log = structlog.get_logger()


def _message(ev: DomainEvent) -> str:
    return json.dumps({
        "id": str(ev.id),
        "type": ev.event_type,
        "giveaway_id": str(ev.giveaway_id) if ev.giveaway_id else None,
        "payload": ev.payload,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
    })


async def _run(session_factory=SessionLocal, publisher=None, limit: int = 100) -> int:
    """Drain the outbox in creation order. Subscribers may see an event twice, never zero times."""
    publisher = publisher or Redis.from_url(settings.redis_url)
    sent = 0
    async with session_factory() as session:
        events = (await session.execute(
            select(DomainEvent)
            .where(DomainEvent.published_at.is_(None))
            .order_by(DomainEvent.created_at.asc(), DomainEvent.id.asc())
            .limit(limit)
        )).scalars().all()
        for ev in events:
            publisher.publish(settings.events_channel, _message(ev))
            await session.execute(
                update(DomainEvent).where(DomainEvent.id == ev.id).values(published_at=utcnow())
            )
            await session.commit()
            sent += 1
    if sent:
        log.info("events_published", count=sent, channel=settings.events_channel)
    return sent


def publish_events():
    # RQ entry point (sync); run the async coroutine
    return asyncio.run(_run())
