from __future__ import annotations
from uuid import UUID
import structlog
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import advisory_lock
from app.errors import EscrowHalted, EscrowInconsistency, InsufficientFunds, InvalidAmount, NotFound, Conflict
from app.models.escrow import EscrowAccount, EscrowMovement, EscrowReservation
from app.models.payout import Payout
from app.services import audit
from app.services.clock import utcnow

log = structlog.get_logger()


async def _lock(session: AsyncSession, giveaway_id: UUID) -> None:
    await advisory_lock(session, f"escrow:{giveaway_id}")


async def get_account(session: AsyncSession, giveaway_id: UUID) -> EscrowAccount | None:
    return await session.scalar(
        select(EscrowAccount).where(EscrowAccount.giveaway_id == giveaway_id).execution_options(populate_existing=True)
    )


async def ensure_account(session: AsyncSession, giveaway_id: UUID) -> EscrowAccount:
    acct = await get_account(session, giveaway_id)
    if acct:
        return acct
    acct = EscrowAccount(giveaway_id=giveaway_id, gross_collected=0, available_amount=0,
                         reserved_amount=0, paid_out_amount=0, halted=False)
    session.add(acct)
    await session.flush()
    return acct


async def check_invariant(session: AsyncSession, giveaway_id: UUID) -> EscrowAccount:
    """available + reserved + paid_out == gross and nothing negative; raises EscrowInconsistency otherwise."""
    acct = await get_account(session, giveaway_id)
    if acct is None:
        raise NotFound("Escrow account not found", giveaway_id=str(giveaway_id))
    problems = []
    if min(acct.available_amount, acct.reserved_amount, acct.paid_out_amount, acct.gross_collected) < 0:
        problems.append("negative balance")
    if acct.available_amount + acct.reserved_amount + acct.paid_out_amount != acct.gross_collected:
        problems.append("available + reserved + paid_out != gross_collected")
    if problems:
        raise EscrowInconsistency(
            "; ".join(problems), giveaway_id=str(giveaway_id),
            gross=acct.gross_collected, available=acct.available_amount,
            reserved=acct.reserved_amount, paid_out=acct.paid_out_amount,
        )
    return acct


async def credit(session: AsyncSession, giveaway_id: UUID, amount: int, *, external_ref: str | None = None) -> bool:
    """
    Confirmed entry payment lands in escrow. Idempotent by external_ref.
    Returns True if a new credit was applied; False if duplicate.
    """
    if amount <= 0:
        raise InvalidAmount("credit amount must be > 0")
    await _lock(session, giveaway_id)
    await ensure_account(session, giveaway_id)
    if external_ref:
        exists = await session.scalar(select(EscrowMovement).where(EscrowMovement.external_ref == external_ref))
        if exists:
            return False
    await session.execute(
        update(EscrowAccount)
        .where(EscrowAccount.giveaway_id == giveaway_id)
        .values(
            gross_collected=EscrowAccount.gross_collected + amount,
            available_amount=EscrowAccount.available_amount + amount,
        )
    )
    session.add(EscrowMovement(giveaway_id=giveaway_id, kind="CREDIT", amount=int(amount), external_ref=external_ref))
    await session.flush()
    await check_invariant(session, giveaway_id)
    log.info("escrow_credited", giveaway_id=str(giveaway_id), amount=amount)
    return True


async def reserve(session: AsyncSession, giveaway_id: UUID, amount: int) -> UUID:
    """
    Move funds available -> reserved with a single conditional UPDATE so two
    concurrent reservations can never both take the same money.
    """
    if amount <= 0:
        raise InvalidAmount("reserve amount must be > 0")
    await _lock(session, giveaway_id)
    acct = await get_account(session, giveaway_id)
    if acct is None:
        raise InsufficientFunds(f"need {amount}, have 0", giveaway_id=str(giveaway_id))
    if acct.halted:
        raise EscrowHalted(f"Payouts halted: {acct.halted_reason}", giveaway_id=str(giveaway_id))

    res = await session.execute(
        update(EscrowAccount)
        .where(
            EscrowAccount.giveaway_id == giveaway_id,
            EscrowAccount.halted.is_(False),
            EscrowAccount.available_amount >= amount,
        )
        .values(
            available_amount=EscrowAccount.available_amount - amount,
            reserved_amount=EscrowAccount.reserved_amount + amount,
        )
    )
    if res.rowcount != 1:
        acct = await get_account(session, giveaway_id)
        if acct.halted:
            raise EscrowHalted(f"Payouts halted: {acct.halted_reason}", giveaway_id=str(giveaway_id))
        raise InsufficientFunds(f"need {amount}, have {acct.available_amount}", giveaway_id=str(giveaway_id))

    rsv = EscrowReservation(giveaway_id=giveaway_id, amount=int(amount), status="held")
    session.add(rsv)
    await session.flush()
    session.add(EscrowMovement(giveaway_id=giveaway_id, kind="RESERVE", amount=int(amount), reservation_id=rsv.id))
    await session.flush()
    await check_invariant(session, giveaway_id)
    log.info("escrow_reserved", giveaway_id=str(giveaway_id), amount=amount, reservation_id=str(rsv.id))
    return rsv.id


async def settle(session: AsyncSession, reservation_id: UUID, outcome: str) -> EscrowReservation:
    """
    succeeded: reserved -> paid_out (money left the system)
    failed:    reserved -> available
    Settling an already settled reservation with the same outcome is a no-op.
    """
    if outcome not in ("succeeded", "failed"):
        raise ValueError(f"unknown settlement outcome {outcome!r}")
    rsv = await session.get(EscrowReservation, reservation_id, populate_existing=True)
    if not rsv:
        raise NotFound("Reservation not found", reservation_id=str(reservation_id))
    target = "consumed" if outcome == "succeeded" else "released"
    if rsv.status == target:
        return rsv
    if rsv.status != "held":
        raise Conflict(f"Reservation already {rsv.status}", reservation_id=str(reservation_id))

    await _lock(session, rsv.giveaway_id)
    claimed = await session.execute(
        update(EscrowReservation)
        .where(EscrowReservation.id == reservation_id, EscrowReservation.status == "held")
        .values(status=target, settled_at=utcnow())
    )
    if claimed.rowcount != 1:
        rsv = await session.get(EscrowReservation, reservation_id, populate_existing=True)
        if rsv.status == target:
            return rsv
        raise Conflict(f"Reservation already {rsv.status}", reservation_id=str(reservation_id))

    amount = int(rsv.amount)
    if outcome == "succeeded":
        values = dict(reserved_amount=EscrowAccount.reserved_amount - amount,
                      paid_out_amount=EscrowAccount.paid_out_amount + amount)
        kind = "SETTLE"
    else:
        values = dict(reserved_amount=EscrowAccount.reserved_amount - amount,
                      available_amount=EscrowAccount.available_amount + amount)
        kind = "RELEASE"
    await session.execute(update(EscrowAccount).where(EscrowAccount.giveaway_id == rsv.giveaway_id).values(**values))
    session.add(EscrowMovement(giveaway_id=rsv.giveaway_id, kind=kind, amount=amount, reservation_id=rsv.id))
    await session.flush()
    await check_invariant(session, rsv.giveaway_id)
    await session.refresh(rsv)
    log.info("escrow_settled", giveaway_id=str(rsv.giveaway_id), reservation_id=str(rsv.id), outcome=outcome, amount=amount)
    return rsv


async def restore(session: AsyncSession, giveaway_id: UUID, amount: int, *, external_ref: str) -> bool:
    """A reversed transfer returns money: paid_out -> available. Idempotent by external_ref."""
    if amount <= 0:
        raise InvalidAmount("restore amount must be > 0")
    await _lock(session, giveaway_id)
    exists = await session.scalar(select(EscrowMovement).where(EscrowMovement.external_ref == external_ref))
    if exists:
        return False
    await session.execute(
        update(EscrowAccount)
        .where(EscrowAccount.giveaway_id == giveaway_id)
        .values(
            paid_out_amount=EscrowAccount.paid_out_amount - amount,
            available_amount=EscrowAccount.available_amount + amount,
        )
    )
    session.add(EscrowMovement(giveaway_id=giveaway_id, kind="RESTORE", amount=int(amount), external_ref=external_ref))
    await session.flush()
    await check_invariant(session, giveaway_id)
    log.info("escrow_restored", giveaway_id=str(giveaway_id), amount=amount)
    return True


async def halt(session: AsyncSession, giveaway_id: UUID, reason: str) -> None:
    """Stop automated payouts for one giveaway pending manual review. Caller commits."""
    await ensure_account(session, giveaway_id)
    await session.execute(
        update(EscrowAccount)
        .where(EscrowAccount.giveaway_id == giveaway_id)
        .values(halted=True, halted_reason=reason[:255])
    )
    log.error("escrow_halted", giveaway_id=str(giveaway_id), reason=reason)


async def halt_after_inconsistency(session: AsyncSession, giveaway_id: UUID, reason: str,
                                   *, actor_id: str = audit.SYSTEM_ACTOR) -> None:
    """Discard the failed unit of work, then persist the halt on its own."""
    await session.rollback()
    await halt(session, giveaway_id, reason)
    audit.record(session, actor_id=actor_id, action="escrow_halt", target_type="escrow",
                 target_id=giveaway_id, new={"halted": True}, reason=reason)
    await session.commit()


async def resume(session: AsyncSession, giveaway_id: UUID) -> None:
    await session.execute(
        update(EscrowAccount)
        .where(EscrowAccount.giveaway_id == giveaway_id)
        .values(halted=False, halted_reason=None)
    )


async def reconcile(session: AsyncSession, giveaway_id: UUID) -> dict:
    """
    Recompute balances from the movement journal and the payouts table and
    compare with the account row. Read-only; the caller decides whether to halt.
    """
    acct = await get_account(session, giveaway_id)
    if acct is None:
        raise NotFound("Escrow account not found", giveaway_id=str(giveaway_id))

    sums = dict((await session.execute(
        select(EscrowMovement.kind, func.coalesce(func.sum(EscrowMovement.amount), 0))
        .where(EscrowMovement.giveaway_id == giveaway_id)
        .group_by(EscrowMovement.kind)
    )).all())
    credit_total = int(sums.get("CREDIT", 0))
    journal_paid_out = int(sums.get("SETTLE", 0)) - int(sums.get("RESTORE", 0))
    journal_reserved = int(sums.get("RESERVE", 0)) - int(sums.get("SETTLE", 0)) - int(sums.get("RELEASE", 0))

    succeeded = dict((await session.execute(
        select(Payout.payout_type, func.coalesce(func.sum(Payout.amount), 0))
        .where(Payout.giveaway_id == giveaway_id, Payout.status == "succeeded")
        .group_by(Payout.payout_type)
    )).all())
    payouts_out = sum(int(v) for k, v in succeeded.items() if k != "reversal") - int(succeeded.get("reversal", 0))

    mismatches = []
    if credit_total != acct.gross_collected:
        mismatches.append("gross_collected != sum(credits)")
    if journal_paid_out != acct.paid_out_amount:
        mismatches.append("paid_out != journal settlements")
    if payouts_out != acct.paid_out_amount:
        mismatches.append("paid_out != sum(succeeded payouts)")
    if journal_reserved != acct.reserved_amount:
        mismatches.append("reserved != journal reservations")
    if acct.available_amount + acct.reserved_amount + acct.paid_out_amount != acct.gross_collected:
        mismatches.append("available + reserved + paid_out != gross_collected")

    return {
        "giveaway_id": giveaway_id,
        "gross_collected": acct.gross_collected,
        "available_amount": acct.available_amount,
        "reserved_amount": acct.reserved_amount,
        "paid_out_amount": acct.paid_out_amount,
        "journal_credits": credit_total,
        "journal_paid_out": journal_paid_out,
        "succeeded_payouts_total": payouts_out,
        "halted": acct.halted,
        "consistent": not mismatches,
        "mismatches": mismatches,
    }
