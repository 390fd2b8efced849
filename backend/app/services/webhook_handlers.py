"""
Processor event handlers. Each one runs inside the inbox's transaction and may
run more than once for the same event: every mutation is a conditional
transition or an idempotent escrow call keyed by a processor id.
"""
from __future__ import annotations
from typing import Awaitable, Callable
from uuid import UUID
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFound
from app.models.giveaway import Entry, Giveaway
from app.models.payout import PayoutAccount
from app.services import escrow, reconciler

log = structlog.get_logger()

Handler = Callable[[AsyncSession, dict], Awaitable[None]]


def _uuid(value) -> UUID | None:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


async def payment_intent_succeeded(session: AsyncSession, pi: dict) -> None:
    meta = pi.get("metadata") or {}
    entry_id = _uuid(meta.get("entry_id"))
    amount = int(pi.get("amount_received") or pi.get("amount") or 0)

    if entry_id is None:
        giveaway_id = _uuid(meta.get("giveaway_id"))
        if giveaway_id and amount > 0:
            await escrow.credit(session, giveaway_id, amount, external_ref=pi["id"])
        else:
            log.info("payment_ignored", payment_intent=pi.get("id"), reason="no entry or giveaway metadata")
        return

    entry = await session.get(Entry, entry_id, populate_existing=True)
    if not entry:
        # checkout may not have written the entry yet; the inbox retries
        raise NotFound("Entry for payment not found", entry_id=str(entry_id))

    confirmed = await session.execute(
        update(Entry)
        .where(Entry.id == entry_id, Entry.payment_status.in_(("pending", "failed")))
        .values(payment_status="completed", payment_reference=pi["id"])
    )
    if confirmed.rowcount == 1:
        await session.execute(
            update(Giveaway).where(Giveaway.id == entry.giveaway_id)
            .values(tickets_sold=Giveaway.tickets_sold + entry.ticket_count)
        )
        log.info("entry_confirmed", entry_id=str(entry_id), tickets=entry.ticket_count)

    amount = amount or entry.amount_paid
    if amount > 0:
        await escrow.credit(session, entry.giveaway_id, amount, external_ref=pi["id"])


async def payment_intent_failed(session: AsyncSession, pi: dict) -> None:
    entry_id = _uuid((pi.get("metadata") or {}).get("entry_id"))
    if entry_id is None:
        return
    res = await session.execute(
        update(Entry).where(Entry.id == entry_id, Entry.payment_status == "pending").values(payment_status="failed")
    )
    if res.rowcount == 1:
        log.info("entry_payment_failed", entry_id=str(entry_id))


async def transfer_created(session: AsyncSession, tr: dict) -> None:
    payout = await reconciler.find_for_event(session, tr)
    if payout is None or payout.payout_type not in reconciler.TRANSFER_TYPES:
        log.info("transfer_ignored", transfer=tr.get("id"))
        return
    await reconciler.mark_succeeded(session, payout, external_reference=tr.get("id"))


async def transfer_reversed(session: AsyncSession, tr: dict) -> None:
    """Stripe sends the transfer object; the reversal itself is the newest entry in tr.reversals."""
    reversals = ((tr.get("reversals") or {}).get("data")) or []
    for rv in reversals:
        payout = await reconciler.find_for_event(session, rv)
        if payout is not None and payout.payout_type == "reversal" and payout.status != "succeeded":
            await reconciler.mark_succeeded(session, payout, external_reference=rv.get("id"))
            return
    log.info("transfer_reversal_ignored", transfer=tr.get("id"))


async def refund_updated(session: AsyncSession, re: dict) -> None:
    payout = await reconciler.find_for_event(session, re)
    if payout is None or payout.payout_type != "refund":
        log.info("refund_ignored", refund=re.get("id"))
        return
    status = re.get("status")
    if status == "succeeded":
        await reconciler.mark_succeeded(session, payout, external_reference=re.get("id"))
    elif status in ("failed", "canceled"):
        await reconciler.mark_failed(session, payout, re.get("failure_reason") or f"refund {status}")


async def refund_failed(session: AsyncSession, re: dict) -> None:
    payout = await reconciler.find_for_event(session, re)
    if payout is None or payout.payout_type != "refund":
        return
    await reconciler.mark_failed(session, payout, re.get("failure_reason") or "refund failed")


async def account_updated(session: AsyncSession, acct: dict) -> None:
    res = await session.execute(
        update(PayoutAccount)
        .where(PayoutAccount.processor_account_id == acct["id"])
        .values(payouts_enabled=bool(acct.get("payouts_enabled")))
    )
    if res.rowcount:
        log.info("payout_account_updated", account=acct["id"], payouts_enabled=bool(acct.get("payouts_enabled")))


HANDLERS: dict[str, Handler] = {
    "payment_intent.succeeded": payment_intent_succeeded,
    "payment_intent.payment_failed": payment_intent_failed,
    "transfer.created": transfer_created,
    "transfer.reversed": transfer_reversed,
    "refund.updated": refund_updated,
    "charge.refund.updated": refund_updated,
    "refund.failed": refund_failed,
    "account.updated": account_updated,
}
