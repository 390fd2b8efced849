from __future__ import annotations
from datetime import datetime, timedelta
from uuid import UUID
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    AmbiguousOutcome, Conflict, ConsistencyError, EntryNotRefundable, EscrowInconsistency, GiveawayFrozen,
    InsufficientFunds, InvalidAmount, InvalidTransition, NotFound, PayoutInFlight, PayoutRejected,
    ReasonRequired, RecipientNotPayable, TransientError, ValidationError,
)
from app.models.giveaway import Entry, Giveaway
from app.models.payout import Payout, PayoutAccount
from app.services import audit, escrow
from app.services.clock import utcnow
from app.services.processor import PaymentProcessor, ProcessorRejected, ProcessorUnavailable

log = structlog.get_logger()

PAYOUT_TYPES = ("winner_prize", "creator_revenue", "refund", "reversal")
TRANSFER_TYPES = ("winner_prize", "creator_revenue")


def idempotency_key(giveaway_id, recipient_id, payout_type: str, attempt: int,
                    entry_id=None, reverses_payout_id=None) -> str:
    """Same logical intent + same attempt => same key, so a replayed initiate cannot pay twice."""
    parts = [payout_type, str(giveaway_id), str(recipient_id)]
    if entry_id:
        parts.append(str(entry_id))
    if reverses_payout_id:
        parts.append(str(reverses_payout_id))
    parts.append(f"a{attempt}")
    return ":".join(parts)


async def get_payout(session: AsyncSession, payout_id: UUID) -> Payout:
    p = await session.get(Payout, payout_id, populate_existing=True)
    if not p:
        raise NotFound("Payout not found", payout_id=str(payout_id))
    return p


async def _by_key(session: AsyncSession, key: str) -> Payout | None:
    return await session.scalar(
        select(Payout).where(Payout.idempotency_key == key).execution_options(populate_existing=True)
    )


async def _intent_rows(session: AsyncSession, giveaway_id, recipient_id, payout_type, entry_id, reverses_payout_id):
    q = select(Payout).where(
        Payout.giveaway_id == giveaway_id,
        Payout.recipient_id == recipient_id,
        Payout.payout_type == payout_type,
    )
    q = q.where(Payout.entry_id == entry_id if entry_id else Payout.entry_id.is_(None))
    q = q.where(Payout.reverses_payout_id == reverses_payout_id if reverses_payout_id
                else Payout.reverses_payout_id.is_(None))
    return list((await session.execute(q.order_by(Payout.attempt.desc()))).scalars().all())


async def _transition(session: AsyncSession, payout_id: UUID, from_states: tuple[str, ...], **values) -> bool:
    res = await session.execute(
        update(Payout).where(Payout.id == payout_id, Payout.status.in_(from_states)).values(**values)
    )
    return res.rowcount == 1


async def _destination(session: AsyncSession, processor: PaymentProcessor, recipient_id: UUID) -> str:
    acct = await session.get(PayoutAccount, recipient_id)
    if not acct:
        raise RecipientNotPayable("Recipient has no connected payout account", recipient_id=str(recipient_id))
    try:
        info = await processor.retrieve_account(acct.processor_account_id)
    except ProcessorUnavailable as e:
        raise TransientError(f"Could not verify payout account: {e}", recipient_id=str(recipient_id))
    except ProcessorRejected as e:
        raise RecipientNotPayable(f"Payout account rejected: {e}", recipient_id=str(recipient_id))
    acct.payouts_enabled = info.payouts_enabled
    acct.details = info.raw
    if not info.payouts_enabled:
        raise RecipientNotPayable("Recipient account cannot receive payouts yet", recipient_id=str(recipient_id))
    return acct.processor_account_id


async def _submit(session: AsyncSession, processor: PaymentProcessor, payout: Payout, *, target: str) -> Payout:
    """pending -> processing, then one processor call carrying the payout's idempotency key."""
    if payout.status == "pending":
        await _transition(session, payout.id, ("pending",), status="processing", processing_at=utcnow())
        await session.commit()
        payout = await get_payout(session, payout.id)
    if payout.status != "processing":
        return payout

    metadata = {"payout_id": str(payout.id), "giveaway_id": str(payout.giveaway_id), "payout_type": payout.payout_type}
    try:
        if payout.payout_type == "refund":
            result = await processor.create_refund(
                payment_reference=target, amount=payout.amount,
                idempotency_key=payout.idempotency_key, metadata=metadata,
            )
        elif payout.payout_type == "reversal":
            result = await processor.create_transfer_reversal(
                transfer_reference=target, amount=payout.amount,
                idempotency_key=payout.idempotency_key, metadata=metadata,
            )
        else:
            result = await processor.create_transfer(
                amount=payout.amount, currency=payout.currency, destination=target,
                idempotency_key=payout.idempotency_key, metadata=metadata,
            )
    except ProcessorRejected as e:
        await mark_failed(session, payout, str(e)[:255])
        await session.commit()
        payout = await get_payout(session, payout.id)
        log.warning("payout_rejected", payout_id=str(payout.id), reason=payout.failure_reason)
        raise PayoutRejected(f"Processor rejected payout: {e}", payout=payout, payout_id=str(payout.id))
    except ProcessorUnavailable as e:
        log.warning("payout_outcome_unknown", payout_id=str(payout.id), error=str(e))
        raise AmbiguousOutcome("Processor did not answer; awaiting confirmation", payout=payout,
                               payout_id=str(payout.id))

    # the webhook may already have settled it; only fill in the reference
    await session.execute(
        update(Payout)
        .where(Payout.id == payout.id, Payout.external_reference.is_(None))
        .values(external_reference=result.reference)
    )
    await session.commit()
    log.info("payout_submitted", payout_id=str(payout.id), reference=result.reference, processor_status=result.status)
    return await get_payout(session, payout.id)


async def initiate(
    session: AsyncSession,
    processor: PaymentProcessor,
    *,
    giveaway_id: UUID,
    recipient_id: UUID,
    payout_type: str,
    amount: int,
    attempt: int | None = None,
    entry_id: UUID | None = None,
    reverses_payout_id: UUID | None = None,
    initiated_by: str = audit.SYSTEM_ACTOR,
    note: str | None = None,
) -> Payout:
    """
    Reserve escrow, persist the payout as pending, move it to processing and call the processor.

    attempt=None means "the current attempt": an unfinished or succeeded payout for the same intent
    is returned (a pending one is resubmitted with its original key); after a failure the next
    attempt is created. An explicit attempt whose key already exists is returned unchanged.
    """
    if payout_type not in PAYOUT_TYPES:
        raise ValidationError(f"Unknown payout type {payout_type!r}")
    if amount is None or int(amount) <= 0:
        raise InvalidAmount("Payout amount must be > 0")
    amount = int(amount)

    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))

    if payout_type == "winner_prize" and entry_id is None:
        entry_id = await _winning_entry(session, giveaway_id, recipient_id)

    rows = await _intent_rows(session, giveaway_id, recipient_id, payout_type, entry_id, reverses_payout_id)
    if attempt is None:
        latest = rows[0] if rows else None
        if latest and latest.status != "failed":
            existing = latest
            attempt = latest.attempt
        else:
            existing = None
            attempt = latest.attempt + 1 if latest else 1
    else:
        existing = await _by_key(session, idempotency_key(giveaway_id, recipient_id, payout_type, attempt,
                                                          entry_id, reverses_payout_id))
        if not existing and any(r.status != "failed" for r in rows):
            raise PayoutInFlight("Another attempt for this payout is not failed", giveaway_id=str(giveaway_id))

    if existing and existing.status != "pending":
        return existing
    target = await _target(session, processor, payout_type, recipient_id, entry_id, reverses_payout_id)
    if existing:
        return await _submit(session, processor, existing, target=target)

    if g.status == "frozen" and payout_type != "refund":
        raise GiveawayFrozen("Giveaway is frozen", giveaway_id=str(giveaway_id))

    key = idempotency_key(giveaway_id, recipient_id, payout_type, attempt, entry_id, reverses_payout_id)
    reservation_id = None
    if payout_type != "reversal":
        try:
            reservation_id = await escrow.reserve(session, giveaway_id, amount)
        except EscrowInconsistency as e:
            await escrow.halt_after_inconsistency(session, giveaway_id, e.message)
            raise

    payout = Payout(
        giveaway_id=giveaway_id,
        recipient_id=recipient_id,
        payout_type=payout_type,
        amount=amount,
        currency=settings.currency,
        status="pending",
        attempt=attempt,
        idempotency_key=key,
        entry_id=entry_id,
        reverses_payout_id=reverses_payout_id,
        reservation_id=reservation_id,
        initiated_by=str(initiated_by),
        note=note[:255] if note else None,
    )
    session.add(payout)
    try:
        await session.flush()
        audit.record(
            session, actor_id=initiated_by, action="payout_initiate", target_type="payout", target_id=payout.id,
            new={"giveaway_id": giveaway_id, "recipient_id": recipient_id, "payout_type": payout_type,
                 "amount": amount, "attempt": attempt, "idempotency_key": key},
            reason=note,
        )
        await session.commit()
    except IntegrityError:
        # same key committed by a concurrent caller; our reservation rolls back with us
        await session.rollback()
        existing = await _by_key(session, key)
        if existing is None:
            raise
        return existing

    log.info("payout_initiated", payout_id=str(payout.id), payout_type=payout_type, amount=amount, attempt=attempt)
    return await _submit(session, processor, payout, target=target)


async def _winning_entry(session: AsyncSession, giveaway_id: UUID, recipient_id: UUID) -> UUID | None:
    from app.services.selection import current_proof

    proof = await current_proof(session, giveaway_id)
    return proof.winner_entry_id if proof and proof.winner_user_id == recipient_id else None


async def _target(session, processor, payout_type, recipient_id, entry_id, reverses_payout_id) -> str:
    if payout_type == "refund":
        entry = await session.get(Entry, entry_id) if entry_id else None
        if not entry or not entry.payment_reference:
            raise EntryNotRefundable("Entry has no captured payment to refund", entry_id=str(entry_id))
        return entry.payment_reference
    if payout_type == "reversal":
        original = await session.get(Payout, reverses_payout_id) if reverses_payout_id else None
        if not original or not original.external_reference:
            raise InvalidTransition("Only a submitted transfer can be reversed")
        return original.external_reference
    return await _destination(session, processor, recipient_id)


async def mark_succeeded(session: AsyncSession, payout: Payout, *, external_reference: str | None = None) -> bool:
    """
    processing -> succeeded. Only the webhook path calls this. Settles escrow and,
    for refunds, flips the entry to refunded. Returns False when already succeeded.
    Caller commits.
    """
    now = utcnow()
    values = dict(status="succeeded", completed_at=now)
    if external_reference and not payout.external_reference:
        values["external_reference"] = external_reference
    if not await _transition(session, payout.id, ("pending", "processing"), **values):
        current = await get_payout(session, payout.id)
        if current.status == "succeeded":
            return False
        raise ConsistencyError(
            f"Processor reports success for a payout already {current.status}",
            payout_id=str(payout.id), giveaway_id=str(payout.giveaway_id),
        )

    if payout.reservation_id:
        await escrow.settle(session, payout.reservation_id, "succeeded")
    if payout.payout_type == "reversal":
        await escrow.restore(session, payout.giveaway_id, payout.amount, external_ref=f"reversal:{payout.id}")

    if payout.payout_type == "refund" and payout.entry_id:
        entry = await session.get(Entry, payout.entry_id, populate_existing=True)
        flipped = await session.execute(
            update(Entry).where(Entry.id == payout.entry_id, Entry.payment_status == "completed")
            .values(payment_status="refunded")
        )
        if flipped.rowcount == 1:
            await session.execute(
                update(Giveaway).where(Giveaway.id == payout.giveaway_id)
                .values(tickets_sold=Giveaway.tickets_sold - entry.ticket_count)
            )
        audit.emit(session, "refund_issued", giveaway_id=payout.giveaway_id, user_id=payout.recipient_id,
                   entry_id=payout.entry_id, amount=payout.amount, payout_id=payout.id)
    else:
        audit.emit(session, "payout_succeeded", giveaway_id=payout.giveaway_id, user_id=payout.recipient_id,
                   payout_type=payout.payout_type, amount=payout.amount, payout_id=payout.id)
    log.info("payout_succeeded", payout_id=str(payout.id), payout_type=payout.payout_type, amount=payout.amount)
    return True


async def mark_failed(session: AsyncSession, payout: Payout, reason: str) -> bool:
    """pending|processing -> failed and release the reservation. Caller commits."""
    if not await _transition(session, payout.id, ("pending", "processing"),
                             status="failed", failure_reason=(reason or "failed")[:255], completed_at=utcnow()):
        current = await get_payout(session, payout.id)
        if current.status == "failed":
            return False
        raise ConsistencyError(
            f"Processor reports failure for a payout already {current.status}",
            payout_id=str(payout.id), giveaway_id=str(payout.giveaway_id),
        )
    if payout.reservation_id:
        await escrow.settle(session, payout.reservation_id, "failed")
    audit.emit(session, "payout_failed", giveaway_id=payout.giveaway_id, user_id=payout.recipient_id,
               payout_type=payout.payout_type, amount=payout.amount, payout_id=payout.id, reason=reason)
    log.warning("payout_failed", payout_id=str(payout.id), reason=reason)
    return True


async def refund(session: AsyncSession, processor: PaymentProcessor, entry_id: UUID, reason: str,
                 *, actor_id: str) -> Payout:
    """Refund one entry's payment. The entry only becomes refunded once the processor confirms."""
    if not reason or not reason.strip():
        raise ReasonRequired("A reason is required to refund an entry")
    entry = await session.get(Entry, entry_id, populate_existing=True)
    if not entry:
        raise NotFound("Entry not found", entry_id=str(entry_id))
    if entry.payment_status != "completed":
        raise EntryNotRefundable(f"Entry payment is {entry.payment_status}", entry_id=str(entry_id))
    if entry.amount_paid <= 0:
        raise InvalidAmount("Entry has nothing to refund", entry_id=str(entry_id))
    return await initiate(
        session, processor,
        giveaway_id=entry.giveaway_id, recipient_id=entry.user_id, payout_type="refund",
        amount=entry.amount_paid, entry_id=entry.id, initiated_by=actor_id, note=reason.strip(),
    )


async def pay_winner(session: AsyncSession, processor: PaymentProcessor, giveaway_id: UUID,
                     *, actor_id: str) -> Payout:
    from app.services.selection import current_proof

    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    proof = await current_proof(session, giveaway_id)
    if not proof:
        raise Conflict("No winner selected yet", giveaway_id=str(giveaway_id))
    return await initiate(
        session, processor,
        giveaway_id=giveaway_id, recipient_id=proof.winner_user_id, payout_type="winner_prize",
        amount=g.prize_amount, entry_id=proof.winner_entry_id, initiated_by=actor_id,
        note=f"draw {proof.draw_number}",
    )


def platform_fee(gross: int) -> int:
    return gross * settings.platform_fee_bps // 10000


async def refunded_total(session: AsyncSession, giveaway_id: UUID) -> int:
    """Entry payments handed back to entrants; the platform takes no fee on these."""
    total = await session.scalar(
        select(func.coalesce(func.sum(Payout.amount), 0)).where(
            Payout.giveaway_id == giveaway_id,
            Payout.payout_type == "refund",
            Payout.status == "succeeded",
        )
    )
    return int(total or 0)


async def pay_creator(session: AsyncSession, processor: PaymentProcessor, giveaway_id: UUID,
                      *, actor_id: str) -> Payout:
    """Creator receives what is left in escrow after the prize and the platform fee."""
    g = await session.get(Giveaway, giveaway_id)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    if g.status != "completed":
        raise InvalidTransition("Creator is paid after the giveaway completes", giveaway_id=str(giveaway_id))

    rows = await _intent_rows(session, giveaway_id, g.creator_id, "creator_revenue", None, None)
    if rows and rows[0].status != "failed":
        return rows[0]

    if g.prize_amount > 0:
        from app.services.selection import current_proof

        proof = await current_proof(session, giveaway_id)
        prize_paid = proof and await session.scalar(
            select(Payout.id).where(
                Payout.giveaway_id == giveaway_id,
                Payout.payout_type == "winner_prize",
                Payout.entry_id == proof.winner_entry_id,
                Payout.status == "succeeded",
            ).limit(1)
        )
        if not prize_paid:
            raise Conflict("Winner prize must be paid before creator revenue", giveaway_id=str(giveaway_id))

    acct = await escrow.get_account(session, giveaway_id)
    amount = 0
    if acct:
        kept = acct.gross_collected - await refunded_total(session, giveaway_id)
        amount = acct.available_amount - platform_fee(kept)
    if amount <= 0:
        raise InsufficientFunds("Nothing left for the creator", giveaway_id=str(giveaway_id))
    return await initiate(
        session, processor,
        giveaway_id=giveaway_id, recipient_id=g.creator_id, payout_type="creator_revenue",
        amount=amount, initiated_by=actor_id,
    )


async def retry(session: AsyncSession, processor: PaymentProcessor, payout_id: UUID, *, actor_id: str) -> Payout:
    """New attempt with a fresh idempotency key for a failed payout's intent."""
    p = await get_payout(session, payout_id)
    if p.status != "failed":
        raise InvalidTransition(f"Only failed payouts can be retried (status={p.status})", payout_id=str(payout_id))
    return await initiate(
        session, processor,
        giveaway_id=p.giveaway_id, recipient_id=p.recipient_id, payout_type=p.payout_type, amount=p.amount,
        entry_id=p.entry_id, reverses_payout_id=p.reverses_payout_id, initiated_by=actor_id,
        note=f"retry of {p.id}",
    )


async def resubmit(session: AsyncSession, processor: PaymentProcessor, payout_id: UUID, *, actor_id: str) -> Payout:
    """
    Send an unconfirmed payout again under its original idempotency key. The processor
    answers a repeated key with the first result, so this can never pay twice.
    """
    p = await get_payout(session, payout_id)
    if p.status not in ("pending", "processing"):
        raise InvalidTransition(f"Only unconfirmed payouts can be resubmitted (status={p.status})",
                                payout_id=str(payout_id))
    target = await _target(session, processor, p.payout_type, p.recipient_id, p.entry_id, p.reverses_payout_id)
    audit.record(session, actor_id=actor_id, action="payout_resubmit", target_type="payout", target_id=p.id,
                 old={"status": p.status, "external_reference": p.external_reference},
                 new={"idempotency_key": p.idempotency_key})
    await session.commit()
    log.info("payout_resubmitted", payout_id=str(p.id), attempt=p.attempt)
    return await _submit(session, processor, p, target=target)


async def reverse(session: AsyncSession, processor: PaymentProcessor, payout_id: UUID, reason: str,
                  *, actor_id: str) -> Payout:
    """Compensating transfer reversal; in-flight transfers cannot be cancelled."""
    if not reason or not reason.strip():
        raise ReasonRequired("A reason is required to reverse a payout")
    p = await get_payout(session, payout_id)
    if p.payout_type not in TRANSFER_TYPES or p.status != "succeeded":
        raise InvalidTransition("Only succeeded transfers can be reversed", payout_id=str(payout_id))
    return await initiate(
        session, processor,
        giveaway_id=p.giveaway_id, recipient_id=p.recipient_id, payout_type="reversal", amount=p.amount,
        reverses_payout_id=p.id, initiated_by=actor_id, note=reason.strip(),
    )


async def list_payouts(session: AsyncSession, giveaway_id: UUID) -> list[Payout]:
    return list((await session.execute(
        select(Payout).where(Payout.giveaway_id == giveaway_id).order_by(Payout.created_at.asc(), Payout.attempt.asc())
    )).scalars().all())


async def stuck_payouts(session: AsyncSession, now: datetime | None = None,
                        minutes: int | None = None) -> list[Payout]:
    now = now or utcnow()
    cutoff = now - timedelta(minutes=minutes if minutes is not None else settings.stuck_payout_minutes)
    return list((await session.execute(
        select(Payout)
        .where(Payout.status == "processing", Payout.processing_at < cutoff)
        .order_by(Payout.processing_at.asc())
    )).scalars().all())


async def find_for_event(session: AsyncSession, obj: dict) -> Payout | None:
    """Locate the payout a processor object refers to: our metadata first, then the processor id."""
    pid = (obj.get("metadata") or {}).get("payout_id")
    if pid:
        try:
            p = await session.get(Payout, UUID(pid), populate_existing=True)
        except ValueError:
            p = None
        if p:
            return p
    ref = obj.get("id")
    if not ref:
        return None
    return await session.scalar(
        select(Payout).where(Payout.external_reference == ref).execution_options(populate_existing=True)
    )
