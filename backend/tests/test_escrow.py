import pytest

from app.errors import Conflict, EscrowHalted, InsufficientFunds, InvalidAmount
from app.services import escrow
from conftest import fund, make_giveaway


@pytest.mark.asyncio
async def test_credit_is_idempotent_by_reference(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        assert await escrow.credit(s, g.id, 1500, external_ref="pi_once") is True
        await s.commit()
        assert await escrow.credit(s, g.id, 1500, external_ref="pi_once") is False
        await s.commit()

        acct = await escrow.get_account(s, g.id)
        assert acct.gross_collected == 1500
        assert acct.available_amount == 1500

        with pytest.raises(InvalidAmount):
            await escrow.credit(s, g.id, 0, external_ref="pi_zero")


@pytest.mark.asyncio
async def test_reserve_and_settle_conserve_funds(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await fund(s, g.id, 10_000)

        paid = await escrow.reserve(s, g.id, 3000)
        returned = await escrow.reserve(s, g.id, 2000)
        await s.commit()
        acct = await escrow.check_invariant(s, g.id)
        assert (acct.available_amount, acct.reserved_amount, acct.paid_out_amount) == (5000, 5000, 0)

        await escrow.settle(s, paid, "succeeded")
        await escrow.settle(s, returned, "failed")
        await s.commit()
        acct = await escrow.check_invariant(s, g.id)
        assert (acct.available_amount, acct.reserved_amount, acct.paid_out_amount) == (7000, 0, 3000)

        # same outcome again changes nothing; a different one is refused
        await escrow.settle(s, paid, "succeeded")
        with pytest.raises(Conflict):
            await escrow.settle(s, paid, "failed")
        acct = await escrow.get_account(s, g.id)
        assert acct.paid_out_amount == 3000

        # bare reservations have no payout rows; the journal alone must agree with the account
        report = await escrow.reconcile(s, g.id)
        assert report["mismatches"] == ["paid_out != sum(succeeded payouts)"]
        assert report["journal_credits"] == 10_000
        assert report["journal_paid_out"] == 3000


@pytest.mark.asyncio
async def test_two_reservations_cannot_share_the_same_money(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await fund(s, g.id, 5000)

    async with session_factory() as s1, session_factory() as s2:
        await escrow.reserve(s1, g.id, 5000)
        await s1.commit()
        with pytest.raises(InsufficientFunds):
            await escrow.reserve(s2, g.id, 5000)
        await s2.rollback()

    async with session_factory() as s:
        acct = await escrow.check_invariant(s, g.id)
        assert acct.available_amount == 0
        assert acct.reserved_amount == 5000


@pytest.mark.asyncio
async def test_halted_escrow_refuses_reservations(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await fund(s, g.id, 5000)
        await escrow.halt(s, g.id, "manual review")
        await s.commit()
        with pytest.raises(EscrowHalted):
            await escrow.reserve(s, g.id, 100)

        await escrow.resume(s, g.id)
        await s.commit()
        assert await escrow.reserve(s, g.id, 100)


@pytest.mark.asyncio
async def test_restore_returns_reversed_funds_once(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await fund(s, g.id, 4000)
        rid = await escrow.reserve(s, g.id, 4000)
        await escrow.settle(s, rid, "succeeded")
        assert await escrow.restore(s, g.id, 4000, external_ref="reversal:abc") is True
        assert await escrow.restore(s, g.id, 4000, external_ref="reversal:abc") is False
        await s.commit()

        acct = await escrow.check_invariant(s, g.id)
        assert (acct.available_amount, acct.paid_out_amount) == (4000, 0)


@pytest.mark.asyncio
async def test_reconcile_flags_drift_between_rows_and_journal(session_factory):
    async with session_factory() as s:
        g = await make_giveaway(s)
        await fund(s, g.id, 2000)
        acct = await escrow.get_account(s, g.id)
        acct.gross_collected = 2500
        acct.available_amount = 2500
        await s.commit()

        report = await escrow.reconcile(s, g.id)
        assert not report["consistent"]
        assert "gross_collected != sum(credits)" in report["mismatches"]
