from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import get_current_admin
from app.db import get_session
from app.errors import NotFound
from app.jobs.queue import kick_publisher
from app.schemas.admin import (
    ApproveResponse, AuditEntryPublic, OptionalReasonRequest, ReasonRequest, SelectWinnerRequest, StatusResponse,
)
from app.schemas.escrow import EscrowPublic, ReconciliationReport, ResumeRequest
from app.schemas.fairness import ProofPublic
from app.schemas.payout import InitiatePayoutRequest, PayoutPublic, RefundRequest, ReverseRequest
from app.schemas.webhook import DeliveryPublic, ReplayResponse, WebhookStats
from app.services import admin_actions, audit, closing, escrow, inbox, reconciler
from app.services.processor import PaymentProcessor, get_processor

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(kick_publisher)])


# ---------- giveaway lifecycle ----------

@router.post("/giveaways/{giveaway_id}/approve", response_model=ApproveResponse)
async def approve(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                  session: AsyncSession = Depends(get_session)):
    seed_hash = await admin_actions.approve(session, giveaway_id, actor_id=actor)
    return ApproveResponse(giveaway_id=giveaway_id, status="active", server_seed_hash=seed_hash)

@router.post("/giveaways/{giveaway_id}/reject", response_model=StatusResponse)
async def reject(giveaway_id: UUID, payload: ReasonRequest, actor: str = Depends(get_current_admin),
                 session: AsyncSession = Depends(get_session)):
    await admin_actions.reject(session, giveaway_id, payload.reason, actor_id=actor)
    return StatusResponse(giveaway_id=giveaway_id, status="rejected")

@router.post("/giveaways/{giveaway_id}/freeze", response_model=StatusResponse)
async def freeze(giveaway_id: UUID, payload: ReasonRequest, actor: str = Depends(get_current_admin),
                 session: AsyncSession = Depends(get_session)):
    await admin_actions.freeze(session, giveaway_id, payload.reason, actor_id=actor)
    return StatusResponse(giveaway_id=giveaway_id, status="frozen")

@router.post("/giveaways/{giveaway_id}/unfreeze", response_model=StatusResponse)
async def unfreeze(giveaway_id: UUID, payload: OptionalReasonRequest | None = None,
                   actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session)):
    await admin_actions.unfreeze(session, giveaway_id, payload.reason if payload else None, actor_id=actor)
    return StatusResponse(giveaway_id=giveaway_id, status="active")

@router.post("/giveaways/{giveaway_id}/close", response_model=ProofPublic | None)
async def close(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                session: AsyncSession = Depends(get_session)):
    proof = await closing.close_and_draw(session, giveaway_id)
    return ProofPublic.model_validate(proof) if proof else None


# ---------- winner ----------

@router.post("/giveaways/{giveaway_id}/winner", response_model=ProofPublic)
async def select_winner(giveaway_id: UUID, payload: SelectWinnerRequest,
                        actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session)):
    proof = await admin_actions.select_winner(session, giveaway_id, actor_id=actor,
                                              force=payload.force, reason=payload.reason)
    return ProofPublic.model_validate(proof)


# ---------- payouts / refunds ----------

@router.get("/giveaways/{giveaway_id}/payouts", response_model=list[PayoutPublic])
async def list_payouts(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                       session: AsyncSession = Depends(get_session)):
    return [PayoutPublic.model_validate(p) for p in await reconciler.list_payouts(session, giveaway_id)]

@router.post("/giveaways/{giveaway_id}/payouts", response_model=PayoutPublic)
async def initiate_payout(giveaway_id: UUID, payload: InitiatePayoutRequest,
                          actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session),
                          processor: PaymentProcessor = Depends(get_processor)):
    p = await reconciler.initiate(
        session, processor,
        giveaway_id=giveaway_id, recipient_id=payload.recipient_id, payout_type=payload.payout_type,
        amount=payload.amount, attempt=payload.attempt, initiated_by=actor, note=payload.note,
    )
    return PayoutPublic.model_validate(p)

@router.post("/giveaways/{giveaway_id}/payouts/winner", response_model=PayoutPublic)
async def pay_winner(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                     session: AsyncSession = Depends(get_session),
                     processor: PaymentProcessor = Depends(get_processor)):
    return PayoutPublic.model_validate(await reconciler.pay_winner(session, processor, giveaway_id, actor_id=actor))

@router.post("/giveaways/{giveaway_id}/payouts/creator", response_model=PayoutPublic)
async def pay_creator(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                      session: AsyncSession = Depends(get_session),
                      processor: PaymentProcessor = Depends(get_processor)):
    return PayoutPublic.model_validate(await reconciler.pay_creator(session, processor, giveaway_id, actor_id=actor))

@router.get("/payouts/stuck", response_model=list[PayoutPublic])
async def stuck_payouts(minutes: int | None = Query(default=None, ge=1), actor: str = Depends(get_current_admin),
                        session: AsyncSession = Depends(get_session)):
    return [PayoutPublic.model_validate(p) for p in await reconciler.stuck_payouts(session, minutes=minutes)]

@router.post("/payouts/{payout_id}/resubmit", response_model=PayoutPublic)
async def resubmit_payout(payout_id: UUID, actor: str = Depends(get_current_admin),
                          session: AsyncSession = Depends(get_session),
                          processor: PaymentProcessor = Depends(get_processor)):
    return PayoutPublic.model_validate(await reconciler.resubmit(session, processor, payout_id, actor_id=actor))

@router.post("/payouts/{payout_id}/retry", response_model=PayoutPublic)
async def retry_payout(payout_id: UUID, actor: str = Depends(get_current_admin),
                       session: AsyncSession = Depends(get_session),
                       processor: PaymentProcessor = Depends(get_processor)):
    return PayoutPublic.model_validate(await reconciler.retry(session, processor, payout_id, actor_id=actor))

@router.post("/payouts/{payout_id}/reverse", response_model=PayoutPublic)
async def reverse_payout(payout_id: UUID, payload: ReverseRequest, actor: str = Depends(get_current_admin),
                         session: AsyncSession = Depends(get_session),
                         processor: PaymentProcessor = Depends(get_processor)):
    p = await reconciler.reverse(session, processor, payout_id, payload.reason, actor_id=actor)
    return PayoutPublic.model_validate(p)

@router.post("/entries/{entry_id}/refund", response_model=PayoutPublic)
async def refund_entry(entry_id: UUID, payload: RefundRequest, actor: str = Depends(get_current_admin),
                       session: AsyncSession = Depends(get_session),
                       processor: PaymentProcessor = Depends(get_processor)):
    p = await reconciler.refund(session, processor, entry_id, payload.reason, actor_id=actor)
    return PayoutPublic.model_validate(p)


# ---------- escrow ----------

@router.get("/giveaways/{giveaway_id}/escrow", response_model=EscrowPublic)
async def get_escrow(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                     session: AsyncSession = Depends(get_session)):
    acct = await escrow.get_account(session, giveaway_id)
    if not acct:
        raise NotFound("Escrow account not found", giveaway_id=str(giveaway_id))
    return EscrowPublic.model_validate(acct)

@router.post("/giveaways/{giveaway_id}/escrow/reconcile", response_model=ReconciliationReport)
async def reconcile_escrow(giveaway_id: UUID, actor: str = Depends(get_current_admin),
                           session: AsyncSession = Depends(get_session)):
    return ReconciliationReport(**await admin_actions.reconcile_escrow(session, giveaway_id, actor_id=actor))

@router.post("/giveaways/{giveaway_id}/escrow/resume", response_model=ReconciliationReport)
async def resume_payouts(giveaway_id: UUID, payload: ResumeRequest, actor: str = Depends(get_current_admin),
                         session: AsyncSession = Depends(get_session)):
    return ReconciliationReport(**await admin_actions.resume_payouts(session, giveaway_id, payload.reason,
                                                                     actor_id=actor))


# ---------- webhook inbox ----------

@router.get("/webhooks", response_model=list[DeliveryPublic])
async def list_webhooks(status: str | None = None, limit: int = Query(default=100, ge=1, le=500),
                        actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session)):
    return [DeliveryPublic.model_validate(d) for d in await inbox.list_deliveries(session, status, limit)]

@router.get("/webhooks/stats", response_model=WebhookStats)
async def webhook_stats(actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session)):
    return WebhookStats(**await inbox.stats(session))

@router.post("/webhooks/{delivery_id}/replay", response_model=ReplayResponse)
async def replay_webhook(delivery_id: UUID, payload: OptionalReasonRequest | None = None,
                         actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session)):
    status = await inbox.replay(session, delivery_id, actor_id=actor, reason=payload.reason if payload else None)
    return ReplayResponse(delivery_id=delivery_id, status=status)


# ---------- audit ----------

@router.get("/audit", response_model=list[AuditEntryPublic])
async def audit_trail(target_type: str | None = None, target_id: str | None = None,
                      limit: int = Query(default=100, ge=1, le=500),
                      actor: str = Depends(get_current_admin), session: AsyncSession = Depends(get_session)):
    rows = await audit.audit_trail(session, target_type=target_type, target_id=target_id, limit=limit)
    return [AuditEntryPublic.model_validate(r) for r in rows]
