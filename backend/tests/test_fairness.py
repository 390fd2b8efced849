import uuid
from datetime import timedelta
import pytest
from sqlalchemy import select

from app.errors import (
    AlreadyCommitted, CommitmentTooLate, GiveawayFrozen, NoEligibleEntries, NotYetClosed, PayoutInFlight,
    ReasonRequired,
)
from app.models.audit import AuditLogEntry, DomainEvent
from app.models.fairness import FairnessProof
from app.models.giveaway import Giveaway
from app.models.payout import Payout
from app.services import commitment, selection, snapshot
from app.services.draw import hash_seed
from conftest import T0, add_entry, make_giveaway

AFTER_CLOSE = T0 + timedelta(hours=2)


@pytest.mark.asyncio
async def test_commitment_hides_seed_until_close(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        before = await commitment.public_commitment(s, g.id, now=T0)
        assert before["server_seed"] is None
        assert len(before["server_seed_hash"]) == 64

        with pytest.raises(NotYetClosed):
            await commitment.reveal(s, g.id, now=T0)

        seed = await commitment.reveal(s, g.id, now=AFTER_CLOSE)
        assert hash_seed(seed) == before["server_seed_hash"]
        after = await commitment.public_commitment(s, g.id, now=AFTER_CLOSE)
        assert after["server_seed"] == seed


@pytest.mark.asyncio
async def test_commit_once_and_before_close(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        with pytest.raises(AlreadyCommitted):
            await commitment.commit(s, g.id, now=T0)

        late = await make_giveaway(s, with_seed=False)
        with pytest.raises(CommitmentTooLate):
            await commitment.commit(s, late.id, now=AFTER_CLOSE)


@pytest.mark.asyncio
async def test_snapshot_only_counts_paid_and_free_entries(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        a = await add_entry(s, g.id, 1, offset=1)
        await add_entry(s, g.id, 5, status="pending", offset=2)
        b = await add_entry(s, g.id, 2, status="not_required", amount=0, offset=3)
        await add_entry(s, g.id, 4, status="refunded", offset=4)
        c = await add_entry(s, g.id, 3, offset=5)

        with pytest.raises(NotYetClosed):
            await snapshot.build_snapshot(s, g.id, now=T0)

        snap = await snapshot.build_snapshot(s, g.id, now=AFTER_CLOSE)
        ranges = await snapshot.load_ranges(s, snap.id)
        assert snap.total_tickets == 6
        assert [r.entry_id for r in ranges] == [str(a.id), str(b.id), str(c.id)]
        assert [(r.start, r.end) for r in ranges] == [(0, 1), (1, 3), (3, 6)]

        again = await snapshot.build_snapshot(s, g.id, now=AFTER_CLOSE + timedelta(hours=1))
        assert again.id == snap.id


@pytest.mark.asyncio
async def test_snapshot_ignores_entries_added_after_freeze(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await add_entry(s, g.id, 2, offset=1)
        snap = await snapshot.build_snapshot(s, g.id, now=AFTER_CLOSE)
        await add_entry(s, g.id, 10, offset=2)
        again = await snapshot.build_snapshot(s, g.id, now=AFTER_CLOSE)
        assert again.id == snap.id and again.total_tickets == 2


@pytest.mark.asyncio
async def test_no_eligible_entries(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await add_entry(s, g.id, 3, status="pending")
        with pytest.raises(NoEligibleEntries):
            await snapshot.build_snapshot(s, g.id, now=AFTER_CLOSE)


@pytest.mark.asyncio
async def test_select_winner_is_verifiable(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        for i, t in enumerate((1, 2, 1)):
            await add_entry(s, g.id, t, offset=i)

        proof, created = await selection.select_winner(s, g.id, now=AFTER_CLOSE)
        assert created
        assert proof.draw_number == 1
        assert proof.eligible_tickets == 4
        assert hash_seed(proof.server_seed) == proof.server_seed_hash

        report = await selection.verify_proof(s, proof.id)
        assert report.valid, report.errors

        g = await s.get(Giveaway, g.id, populate_existing=True)
        assert g.status == "completed"
        assert g.winner_user_id == proof.winner_user_id

        events = (await s.execute(
            select(DomainEvent).where(DomainEvent.giveaway_id == g.id, DomainEvent.event_type == "winner_selected")
        )).scalars().all()
        assert len(events) == 1


@pytest.mark.asyncio
async def test_concurrent_selection_yields_one_proof(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        for i in range(4):
            await add_entry(s, g.id, i + 1, offset=i)

    async with session_factory() as s1, session_factory() as s2:
        first, created1 = await selection.select_winner(s1, g.id, now=AFTER_CLOSE)
        second, created2 = await selection.select_winner(s2, g.id, now=AFTER_CLOSE)

    assert created1 and not created2
    assert first.id == second.id
    async with session_factory() as s:
        count = len((await s.execute(select(FairnessProof).where(FairnessProof.giveaway_id == g.id))).scalars().all())
        assert count == 1


@pytest.mark.asyncio
async def test_frozen_giveaway_refuses_draw(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s, status="frozen")
        await add_entry(s, g.id, 1)
        with pytest.raises(GiveawayFrozen):
            await selection.select_winner(s, g.id, now=AFTER_CLOSE)


@pytest.mark.asyncio
async def test_force_reselect_keeps_history_and_audits(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        for i, t in enumerate((1, 2, 1)):
            await add_entry(s, g.id, t, offset=i)
        first, _ = await selection.select_winner(s, g.id, now=AFTER_CLOSE)

        with pytest.raises(ReasonRequired):
            await selection.force_reselect(s, g.id, "  ", actor_id="admin-1")

        second = await selection.force_reselect(s, g.id, "previous winner failed KYC", actor_id="admin-1")
        assert second.draw_number == 2
        assert second.winner_entry_id != first.winner_entry_id
        assert str(first.winner_entry_id) in second.excluded_entry_ids
        assert (await selection.verify_proof(s, second.id)).valid

        history = await selection.proof_history(s, g.id)
        assert [p.draw_number for p in history] == [1, 2]
        assert history[0].superseded_at is not None
        assert history[0].supersede_reason == "previous winner failed KYC"
        assert (await selection.verify_proof(s, first.id)).valid
        assert (await selection.current_proof(s, g.id)).id == second.id

        row = (await s.execute(
            select(AuditLogEntry).where(AuditLogEntry.action == "winner_reselect",
                                        AuditLogEntry.target_id == str(g.id))
        )).scalars().one()
        assert row.actor_id == "admin-1"
        assert row.reason == "previous winner failed KYC"
        assert row.old_values["winner_user_id"] == str(first.winner_user_id)
        assert row.new_values["winner_user_id"] == str(second.winner_user_id)


@pytest.mark.asyncio
async def test_reselect_excludes_entries_refunded_after_snapshot(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        entries = [await add_entry(s, g.id, 1, offset=i) for i in range(3)]
        first, _ = await selection.select_winner(s, g.id, now=AFTER_CLOSE)
        refunded = next(e for e in entries if e.id != first.winner_entry_id)
        refunded.payment_status = "refunded"
        await s.commit()

        second = await selection.force_reselect(s, g.id, "winner disqualified", actor_id="admin-1")
        remaining = {e.id for e in entries} - {first.winner_entry_id, refunded.id}
        assert second.winner_entry_id in remaining
        assert sorted(second.excluded_entry_ids) == sorted([str(first.winner_entry_id), str(refunded.id)])
        assert second.eligible_tickets == 1


@pytest.mark.asyncio
async def test_reselect_blocked_while_prize_payout_in_flight(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await add_entry(s, g.id, 1, offset=0)
        await add_entry(s, g.id, 1, offset=1)
        first, _ = await selection.select_winner(s, g.id, now=AFTER_CLOSE)
        s.add(Payout(giveaway_id=g.id, recipient_id=first.winner_user_id, payout_type="winner_prize", amount=100,
                     status="processing", attempt=1, idempotency_key=f"test:{uuid.uuid4()}"))
        await s.commit()
        with pytest.raises(PayoutInFlight):
            await selection.force_reselect(s, g.id, "reason", actor_id="admin-1")
