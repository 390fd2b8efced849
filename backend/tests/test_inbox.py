import json
import uuid
from datetime import timedelta
import pytest
from sqlalchemy import select

from app.errors import Conflict
from app.models.giveaway import Entry, Giveaway
from app.models.payout import PayoutAccount
from app.models.webhook import WebhookDelivery
from app.services import escrow, inbox, reconciler, selection
from app.services.clock import utcnow
from conftest import T0, add_entry, make_giveaway, payout_account, sign, stripe_event

AFTER_CLOSE = T0 + timedelta(hours=2)


def _payment(entry, amount=None):
    return {
        "id": f"pi_evt_{entry.id.hex[:16]}",
        "object": "payment_intent",
        "amount_received": amount if amount is not None else entry.amount_paid,
        "metadata": {"entry_id": str(entry.id), "giveaway_id": str(entry.giveaway_id)},
    }


async def _receive(s, body, sig, handlers=None, now=None):
    event = json.loads(body)
    return await inbox.receive(s, webhook_id=event["id"], event_type=event["type"], payload=event,
                               signature=sig, raw_body=body, handlers=handlers, now=now)


@pytest.mark.asyncio
async def test_duplicate_payment_event_credits_once(client, session_factory, queue):
    async with session_factory() as s:
        g = await make_giveaway(s)
        entry = await add_entry(s, g.id, 3, status="pending", reference="pi_placeholder_dup")

    body, sig = stripe_event("payment_intent.succeeded", _payment(entry), event_id="evt_dup_1")
    async with client() as c:
        first = await c.post("/stripe/webhook", content=body, headers={"Stripe-Signature": sig})
        second = await c.post("/stripe/webhook", content=body, headers={"Stripe-Signature": sig})

    assert first.status_code == 200
    assert first.json() == {"accepted": True, "duplicate": False, "status": "succeeded"}
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert len(queue.jobs) == 2

    async with session_factory() as s:
        acct = await escrow.check_invariant(s, g.id)
        assert acct.gross_collected == 1500
        e = await s.get(Entry, entry.id)
        assert e.payment_status == "completed"
        assert e.payment_reference == f"pi_evt_{entry.id.hex[:16]}"
        assert (await s.get(Giveaway, g.id)).tickets_sold == 3


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_without_recording(client, session_factory):
    body, _ = stripe_event("payment_intent.succeeded", {"id": "pi_x", "metadata": {}}, event_id="evt_badsig")
    async with client() as c:
        wrong = await c.post("/stripe/webhook", content=body, headers={"Stripe-Signature": sign(body, "whsec_other")})
        missing = await c.post("/stripe/webhook", content=body)
        garbage = await c.post("/stripe/webhook", content="not json", headers={"Stripe-Signature": sign("not json")})
    assert wrong.status_code == 400
    assert missing.status_code == 400
    assert garbage.status_code == 400

    async with session_factory() as s:
        found = await s.scalar(select(WebhookDelivery).where(WebhookDelivery.webhook_id == "evt_badsig"))
        assert found is None


@pytest.mark.asyncio
async def test_handler_failure_backs_off_then_fails_permanently(session_factory):
    calls = []

    async def flaky(session, obj):
        calls.append(obj["id"])
        raise RuntimeError("downstream unavailable")

    handlers = {"payment_intent.succeeded": flaky}
    body, sig = stripe_event("payment_intent.succeeded", {"id": "pi_flaky"}, event_id="evt_flaky")
    now = utcnow()

    async with session_factory() as s:
        result = await _receive(s, body, sig, handlers=handlers, now=now)
        assert result["status"] == "retrying"
        d_id = result["delivery_id"]
        d = await inbox.get_delivery(s, d_id)
        assert d.attempt_count == 1
        assert "downstream unavailable" in d.error_message

        # a direct process call ignores the backoff; the sweep is what honours it
        assert await inbox.process(s, d_id, now=now, handlers=handlers) == "retrying"
        assert len(calls) == 2
        assert inbox.retry_delay(1) == 1
        assert inbox.retry_delay(3) == 4

        assert await inbox.process(s, d_id, now=now, handlers=handlers) == "failed"
        d = await inbox.get_delivery(s, d_id)
        assert d.status == "failed"
        assert d.attempt_count == 3
        assert d.next_retry_at is None

        # a redelivery of a permanently failed event is acknowledged, not re-run
        again = await _receive(s, body, sig, handlers=handlers, now=now)
        assert again == {"accepted": True, "duplicate": True, "status": "failed", "delivery_id": d_id}
        assert len(calls) == 3

        stats = await inbox.stats(s)
        assert stats["needs_attention"] >= 1


@pytest.mark.asyncio
async def test_retry_sweep_and_replay(session_factory):
    attempts = []

    async def recovers(session, obj):
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("first try fails")

    handlers = {"payment_intent.succeeded": recovers}
    body, sig = stripe_event("payment_intent.succeeded", {"id": "pi_recovers"}, event_id="evt_recovers")
    now = utcnow()

    async with session_factory() as s:
        result = await _receive(s, body, sig, handlers=handlers, now=now)
        assert result["status"] == "retrying"
        d_id = result["delivery_id"]

        status = await inbox.process(s, d_id, now=now + timedelta(seconds=5), handlers=handlers)
        assert status == "succeeded"
        assert len(attempts) == 2

        replayed = await inbox.replay(s, d_id, actor_id="admin-1", reason="rerun after fix")
        assert replayed == "succeeded"
        d = await inbox.get_delivery(s, d_id)
        assert d.attempt_count == 1


@pytest.mark.asyncio
async def test_process_retries_only_picks_due_deliveries(session_factory):
    async def boom(session, obj):
        raise RuntimeError("boom")

    body, sig = stripe_event("refund.updated", {"id": "re_boom"}, event_id="evt_sweep")
    now = utcnow()
    async with session_factory() as s:
        result = await _receive(s, body, sig, handlers={"refund.updated": boom}, now=now)
        assert result["status"] == "retrying"
        d = await inbox.get_delivery(s, result["delivery_id"])
        due_at = d.next_retry_at

        await inbox.process_retries(s, now=now)
        d = await inbox.get_delivery(s, result["delivery_id"])
        assert d.status == "retrying"
        assert d.attempt_count == 1
        assert d.id in [row.id for row in await inbox.list_deliveries(s, "retrying")]

        # the real refund handler finds no payout for re_boom and just acknowledges
        outcome = await inbox.process_retries(s, now=due_at + timedelta(seconds=1))
        assert outcome["processed"] >= 1
        d = await inbox.get_delivery(s, result["delivery_id"])
        assert d.status == "succeeded"
        assert d.attempt_count == 2


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged(session_factory):
    body, sig = stripe_event("customer.created", {"id": "cus_123"})
    async with session_factory() as s:
        result = await _receive(s, body, sig)
        assert result["status"] == "succeeded"
        d = await inbox.get_delivery(s, result["delivery_id"])
        assert d.error_message == inbox.NO_HANDLER


@pytest.mark.asyncio
async def test_transfer_created_settles_winner_payout(session_factory, processor):
    async with session_factory() as s:
        g = await make_giveaway(s, prize_amount=2000)
        await add_entry(s, g.id, 1)
        await escrow.credit(s, g.id, 5000, external_ref="pi_transfer_flow")
        await s.commit()
        proof, _ = await selection.select_winner(s, g.id, now=AFTER_CLOSE)
        await payout_account(s, proof.winner_user_id)
        p = await reconciler.pay_winner(s, processor, g.id, actor_id="admin-1")

        body, sig = stripe_event("transfer.created", {
            "id": p.external_reference, "object": "transfer", "amount": 2000,
            "metadata": {"payout_id": str(p.id)},
        })
        assert (await _receive(s, body, sig))["status"] == "succeeded"
        p = await reconciler.get_payout(s, p.id)
        assert p.status == "succeeded"

        acct = await escrow.check_invariant(s, g.id)
        assert (acct.available_amount, acct.reserved_amount, acct.paid_out_amount) == (3000, 0, 2000)


@pytest.mark.asyncio
async def test_refund_updated_marks_entry_refunded(session_factory, processor):
    async with session_factory() as s:
        g = await make_giveaway(s)
        entry = await add_entry(s, g.id, 2)
        g.tickets_sold = 2
        await escrow.credit(s, g.id, entry.amount_paid, external_ref=entry.payment_reference)
        await s.commit()
        p = await reconciler.refund(s, processor, entry.id, "customer request", actor_id="admin-1")

        body, sig = stripe_event("refund.updated", {"id": p.external_reference, "object": "refund",
                                                    "status": "succeeded"})
        assert (await _receive(s, body, sig))["status"] == "succeeded"

        entry = await s.get(Entry, entry.id, populate_existing=True)
        g = await s.get(Giveaway, g.id, populate_existing=True)
        assert entry.payment_status == "refunded"
        assert g.tickets_sold == 0
        assert (await reconciler.get_payout(s, p.id)).status == "succeeded"


@pytest.mark.asyncio
async def test_success_after_failure_halts_escrow(session_factory, processor):
    async with session_factory() as s:
        g = await make_giveaway(s)
        gid = g.id
        entry = await add_entry(s, g.id, 1)
        await escrow.credit(s, g.id, entry.amount_paid, external_ref=entry.payment_reference)
        await s.commit()
        p = await reconciler.refund(s, processor, entry.id, "customer request", actor_id="admin-1")
        await reconciler.mark_failed(s, p, "card expired")
        await s.commit()

        body, sig = stripe_event("refund.updated", {"id": p.external_reference, "status": "succeeded",
                                                    "metadata": {"payout_id": str(p.id)}})
        assert (await _receive(s, body, sig))["status"] == "failed"

        acct = await escrow.get_account(s, gid)
        assert acct.halted is True
        assert "already failed" in acct.halted_reason


@pytest.mark.asyncio
async def test_account_updated_toggles_payouts(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        acct = await payout_account(s, g.creator_id, enabled=False)
        body, sig = stripe_event("account.updated", {"id": acct.processor_account_id, "payouts_enabled": True})
        assert (await _receive(s, body, sig))["status"] == "succeeded"
        acct = await s.get(PayoutAccount, g.creator_id, populate_existing=True)
        assert acct.payouts_enabled is True


@pytest.mark.asyncio
async def test_handler_failure_is_acknowledged_over_http(client, session_factory):
    # the entry is unknown, so the handler raises and the delivery is scheduled for retry
    body, sig = stripe_event("payment_intent.succeeded", {
        "id": "pi_orphan", "amount_received": 500,
        "metadata": {"entry_id": str(uuid.uuid4())},
    }, event_id="evt_orphan")
    async with client() as c:
        r = await c.post("/stripe/webhook", content=body, headers={"Stripe-Signature": sig})
    assert r.status_code == 200, r.text
    assert r.json() == {"accepted": True, "duplicate": False, "status": "retrying"}

    async with session_factory() as s:
        d = await s.scalar(select(WebhookDelivery).where(WebhookDelivery.webhook_id == "evt_orphan"))
        assert d.status == "retrying"
        assert d.next_retry_at is not None
        assert "Entry for payment not found" in d.error_message


@pytest.mark.asyncio
async def test_stale_processing_claim_is_swept_and_replayable(session_factory):
    now = utcnow()

    def _claimed(last_attempt_at):
        event_id = f"evt_{uuid.uuid4().hex[:20]}"
        return WebhookDelivery(
            webhook_id=event_id, event_type="customer.created",
            payload={"id": event_id, "type": "customer.created", "data": {"object": {"id": "cus_1"}}},
            status="processing", attempt_count=1, last_attempt_at=last_attempt_at,
        )

    async with session_factory() as s:
        stale = _claimed(now - timedelta(minutes=10))
        live = _claimed(now)
        s.add_all([stale, live])
        await s.commit()
        stale_id, live_id = stale.id, live.id

        with pytest.raises(Conflict):
            await inbox.replay(s, live_id, actor_id="admin-1", reason="looks stuck", now=now)

        outcome = await inbox.process_retries(s, now=now)
        assert outcome["processed"] >= 1
        d = await inbox.get_delivery(s, stale_id)
        assert d.status == "succeeded"
        assert d.attempt_count == 2
        assert d.error_message == inbox.NO_HANDLER
        assert (await inbox.get_delivery(s, live_id)).status == "processing"

        later = now + timedelta(minutes=10)
        assert await inbox.replay(s, live_id, actor_id="admin-1", reason="worker died", now=later) == "succeeded"
        d = await inbox.get_delivery(s, live_id)
        assert d.status == "succeeded"
        assert d.attempt_count == 1
