import json
from datetime import timedelta
import pytest
from sqlalchemy import select

from app.config import settings
from app.jobs import close_giveaways, process_retries, publish_events
from app.models.audit import DomainEvent
from app.models.giveaway import Giveaway
from app.services import closing, selection
from app.errors import NotYetClosed
from conftest import T0, add_entry, make_giveaway


class FakePublisher:
    def __init__(self):
        self.messages = []

    def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))


@pytest.mark.asyncio
async def test_close_sweep_draws_or_cancels(session_factory):
    closes_at = T0 + timedelta(minutes=10)
    async with session_factory() as s:
        with_entries = await make_giveaway(s, closes_at=closes_at)
        await add_entry(s, with_entries.id, 2)
        empty = await make_giveaway(s, closes_at=closes_at)
        still_open = await make_giveaway(s, closes_at=T0 + timedelta(days=30))

    now = T0 + timedelta(minutes=15)
    summary = await close_giveaways._run(session_factory, now=now)
    assert summary["drawn"] >= 1
    assert summary["cancelled"] >= 1

    async with session_factory() as s:
        assert (await s.get(Giveaway, with_entries.id)).status == "completed"
        assert (await s.get(Giveaway, empty.id)).status == "cancelled"
        assert (await s.get(Giveaway, still_open.id)).status == "active"
        proof = await selection.current_proof(s, with_entries.id)
        assert proof is not None

        # closing again returns the same proof
        assert (await closing.close_and_draw(s, with_entries.id, now=now)).id == proof.id
        with pytest.raises(NotYetClosed):
            await closing.close_and_draw(s, still_open.id, now=now)


@pytest.mark.asyncio
async def test_outbox_publishes_each_event_once(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await add_entry(s, g.id, 1)
        await selection.select_winner(s, g.id, now=T0 + timedelta(hours=2))

    publisher = FakePublisher()
    sent = await publish_events._run(session_factory, publisher=publisher, limit=1000)
    assert sent >= 1
    channels = {channel for channel, _ in publisher.messages}
    assert channels == {settings.events_channel}
    ours = [m for _, m in publisher.messages if m["giveaway_id"] == str(g.id)]
    assert [m["type"] for m in ours] == ["winner_selected"]

    assert await publish_events._run(session_factory, publisher=publisher, limit=1000) == 0
    async with session_factory() as s:
        pending = (await s.execute(select(DomainEvent).where(DomainEvent.published_at.is_(None)))).scalars().all()
        assert pending == []


@pytest.mark.asyncio
async def test_retry_job_reports_counts(session_factory):
    outcome = await process_retries._run(session_factory, now=T0)
    assert set(outcome) >= {"processed", "succeeded", "retrying", "failed"}
