from __future__ import annotations
from datetime import datetime, timedelta
from uuid import UUID
import stripe
import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import Conflict, ConsistencyError, InvalidSignature, NotFound, TransientError, ValidationError
from app.models.webhook import WebhookDelivery
from app.services import audit, escrow
from app.services.clock import utcnow
from app.services.webhook_handlers import HANDLERS, Handler

log = structlog.get_logger()

NO_HANDLER = "no handler registered"


def verify_signature(raw_body: bytes | str, signature: str | None) -> None:
    if not settings.stripe_webhook_secret:
        raise TransientError("Webhook secret not configured")
    body = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    try:
        stripe.WebhookSignature.verify_header(
            body, signature or "", settings.stripe_webhook_secret,
            tolerance=settings.stripe_signature_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(f"Invalid webhook signature: {e}")


def retry_delay(attempt: int) -> float:
    """Seconds before the next attempt after ``attempt`` failures: doubling from the base, capped."""
    return min(settings.webhook_retry_base_seconds * (2 ** max(attempt - 1, 0)), settings.webhook_retry_max_seconds)


def _stale_before(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.processor_timeout_seconds + settings.webhook_claim_margin_seconds)


def _stale_claim(now: datetime):
    """A processing claim older than any live handler could hold it."""
    return and_(WebhookDelivery.status == "processing", WebhookDelivery.last_attempt_at < _stale_before(now))


def _claimable(now: datetime):
    return or_(WebhookDelivery.status.in_(("pending", "retrying")), _stale_claim(now))


async def _get(session: AsyncSession, webhook_id: str, event_type: str) -> WebhookDelivery | None:
    return await session.scalar(
        select(WebhookDelivery)
        .where(WebhookDelivery.webhook_id == webhook_id, WebhookDelivery.event_type == event_type)
        .execution_options(populate_existing=True)
    )


async def get_delivery(session: AsyncSession, delivery_id: UUID) -> WebhookDelivery:
    d = await session.get(WebhookDelivery, delivery_id, populate_existing=True)
    if not d:
        raise NotFound("Webhook delivery not found", delivery_id=str(delivery_id))
    return d


async def receive(
    session: AsyncSession,
    *,
    webhook_id: str,
    event_type: str,
    payload: dict,
    signature: str | None,
    raw_body: bytes | str,
    now: datetime | None = None,
    handlers: dict[str, Handler] | None = None,
) -> dict:
    """
    Verify, record once per (webhook_id, event_type), then process.
    A redelivery of an event that already succeeded (or is being processed) is acknowledged unprocessed.
    """
    verify_signature(raw_body, signature)
    if not webhook_id or not event_type:
        raise ValidationError("Event id and type are required")

    existing = await _get(session, webhook_id, event_type)
    if existing is None:
        delivery = WebhookDelivery(webhook_id=webhook_id, event_type=event_type, payload=payload,
                                   status="pending", attempt_count=0)
        session.add(delivery)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            existing = await _get(session, webhook_id, event_type)
            if existing is None:
                raise

    if existing is not None:
        if existing.status not in ("pending", "retrying"):
            log.info("webhook_duplicate", webhook_id=webhook_id, event_type=event_type, status=existing.status)
            return {"accepted": True, "duplicate": True, "status": existing.status, "delivery_id": existing.id}
        delivery = existing

    delivery_id = delivery.id
    status = await process(session, delivery_id, now=now, handlers=handlers)
    return {"accepted": True, "duplicate": existing is not None, "status": status, "delivery_id": delivery_id}


async def process(session: AsyncSession, delivery_id: UUID, *, now: datetime | None = None,
                  handlers: dict[str, Handler] | None = None) -> str:
    """
    Claim the delivery (pending|retrying -> processing) and run its handler once.
    A delivery that is already being processed elsewhere is left alone until its claim goes stale.
    Returns the resulting status.
    """
    now = now or utcnow()
    handlers = HANDLERS if handlers is None else handlers

    claimed = await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, _claimable(now))
        .values(status="processing", attempt_count=WebhookDelivery.attempt_count + 1,
                last_attempt_at=now, next_retry_at=None)
    )
    await session.commit()
    d = await get_delivery(session, delivery_id)
    if claimed.rowcount != 1:
        return d.status

    d_id, attempt = d.id, d.attempt_count
    bound = dict(delivery_id=str(d_id), webhook_id=d.webhook_id, event_type=d.event_type, attempt=attempt)
    handler = handlers.get(d.event_type)
    if handler is None:
        await _finish(session, d_id, "succeeded", now, error=NO_HANDLER)
        await session.commit()
        log.info("webhook_unhandled", **bound)
        return "succeeded"

    try:
        await handler(session, (d.payload.get("data") or {}).get("object") or {})
        await _finish(session, d_id, "succeeded", now)
        await session.commit()
    except ConsistencyError as e:
        await session.rollback()
        giveaway_id = e.context.get("giveaway_id")
        if giveaway_id:
            await escrow.halt_after_inconsistency(session, UUID(giveaway_id), e.message, actor_id=audit.WEBHOOK_ACTOR)
        await _finish(session, d_id, "failed", now, error=f"consistency: {e.message}")
        await session.commit()
        log.error("webhook_consistency_failure", error=e.message, **bound)
        return "failed"
    except Exception as e:
        await session.rollback()
        return await _schedule_retry(session, d_id, attempt, now, f"{type(e).__name__}: {e}", bound)

    log.info("webhook_processed", **bound)
    return "succeeded"


async def _finish(session: AsyncSession, delivery_id: UUID, status: str, now: datetime, error: str | None = None):
    await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, WebhookDelivery.status == "processing")
        .values(status=status, processed_at=now, error_message=error, next_retry_at=None)
    )


async def _schedule_retry(session: AsyncSession, delivery_id: UUID, attempt: int, now: datetime,
                          error: str, bound: dict) -> str:
    if attempt >= settings.webhook_max_attempts:
        await _finish(session, delivery_id, "failed", now, error=error[:2000])
        await session.commit()
        log.error("webhook_failed_permanently", error=error, **bound)
        return "failed"
    delay = retry_delay(attempt)
    await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, WebhookDelivery.status == "processing")
        .values(status="retrying", error_message=error[:2000], next_retry_at=now + timedelta(seconds=delay))
    )
    await session.commit()
    log.warning("webhook_retry_scheduled", error=error, delay_seconds=delay, **bound)
    return "retrying"


async def process_retries(session: AsyncSession, now: datetime | None = None, limit: int | None = None) -> dict:
    """Dispatch retrying deliveries whose backoff has elapsed, and stale claims. Called by the scheduler job."""
    now = now or utcnow()
    due = (await session.execute(
        select(WebhookDelivery.id)
        .where(or_(
            and_(WebhookDelivery.status == "retrying", WebhookDelivery.next_retry_at <= now),
            _stale_claim(now),
        ))
        .order_by(WebhookDelivery.created_at.asc())
        .limit(limit or settings.webhook_retry_batch)
    )).scalars().all()
    outcome: dict[str, int] = {"processed": 0, "succeeded": 0, "retrying": 0, "failed": 0}
    for delivery_id in due:
        status = await process(session, delivery_id, now=now)
        outcome["processed"] += 1
        outcome[status] = outcome.get(status, 0) + 1
    if due:
        log.info("webhook_retries_processed", **outcome)
    return outcome


async def replay(session: AsyncSession, delivery_id: UUID, *, actor_id: str, reason: str | None = None,
                 now: datetime | None = None) -> str:
    """
    Operator action: reset a delivery to pending with a fresh attempt budget and run it again.
    A delivery in processing can only be replayed once its claim is stale.
    """
    now = now or utcnow()
    d = await get_delivery(session, delivery_id)
    old = {"status": d.status, "attempt_count": d.attempt_count, "error_message": d.error_message}
    reset = await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, or_(WebhookDelivery.status != "processing", _stale_claim(now)))
        .values(status="pending", attempt_count=0, next_retry_at=None, error_message=None, processed_at=None)
    )
    if reset.rowcount != 1:
        await session.rollback()
        raise Conflict("Delivery is being processed", delivery_id=str(delivery_id))
    audit.record(session, actor_id=actor_id, action="webhook_replay", target_type="webhook_delivery",
                 target_id=delivery_id, old=old, new={"status": "pending"}, reason=reason)
    await session.commit()
    log.info("webhook_replayed", delivery_id=str(delivery_id), actor=actor_id)
    return await process(session, delivery_id, now=now)


async def list_deliveries(session: AsyncSession, status: str | None = None, limit: int = 100) -> list[WebhookDelivery]:
    q = select(WebhookDelivery)
    if status:
        q = q.where(WebhookDelivery.status == status)
    return list((await session.execute(q.order_by(WebhookDelivery.created_at.desc()).limit(limit))).scalars().all())


async def stats(session: AsyncSession) -> dict:
    rows = (await session.execute(
        select(WebhookDelivery.status, func.count()).group_by(WebhookDelivery.status)
    )).all()
    by_status = {status: int(n) for status, n in rows}
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "needs_attention": by_status.get("failed", 0),
    }
