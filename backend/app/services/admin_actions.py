"""
Admin Action Gateway: the only entry point for operator-driven mutations.
Every call takes an actor id, and every state change lands in the audit log
in the same transaction as the change itself.
"""
from __future__ import annotations
from uuid import UUID
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    EscrowInconsistency, InvalidTransition, NotFound, ReasonRequired, WinnerAlreadySelected,
)
from app.models.fairness import FairnessProof
from app.models.giveaway import Giveaway
from app.services import audit, commitment, escrow, selection

log = structlog.get_logger()


def _require_reason(reason: str | None, what: str) -> str:
    if not reason or not reason.strip():
        raise ReasonRequired(f"A reason is required to {what}")
    return reason.strip()


async def _set_status(session: AsyncSession, giveaway_id: UUID, from_states: tuple[str, ...], to: str,
                      *, actor_id: str, action: str, reason: str | None = None) -> Giveaway:
    g = await session.get(Giveaway, giveaway_id, populate_existing=True)
    if not g:
        raise NotFound("Giveaway not found", giveaway_id=str(giveaway_id))
    old = g.status
    res = await session.execute(
        update(Giveaway).where(Giveaway.id == giveaway_id, Giveaway.status.in_(from_states)).values(status=to)
    )
    if res.rowcount != 1:
        raise InvalidTransition(f"Cannot {action} a giveaway that is {old}", giveaway_id=str(giveaway_id))
    audit.record(session, actor_id=actor_id, action=action, target_type="giveaway", target_id=giveaway_id,
                 old={"status": old}, new={"status": to}, reason=reason)
    return g


async def approve(session: AsyncSession, giveaway_id: UUID, *, actor_id: str) -> str:
    """pending_approval -> active, committing the server seed in the same transaction. Returns the seed hash."""
    await _set_status(session, giveaway_id, ("pending_approval",), "active", actor_id=actor_id, action="approve")
    try:
        _seed, seed_hash = await commitment.commit(session, giveaway_id)
    except Exception:
        await session.rollback()
        raise
    return seed_hash


async def reject(session: AsyncSession, giveaway_id: UUID, reason: str, *, actor_id: str) -> None:
    reason = _require_reason(reason, "reject a giveaway")
    await _set_status(session, giveaway_id, ("pending_approval",), "rejected",
                      actor_id=actor_id, action="reject", reason=reason)
    await session.commit()


async def freeze(session: AsyncSession, giveaway_id: UUID, reason: str, *, actor_id: str) -> None:
    reason = _require_reason(reason, "freeze a giveaway")
    await _set_status(session, giveaway_id, ("active",), "frozen", actor_id=actor_id, action="freeze", reason=reason)
    await session.commit()


async def unfreeze(session: AsyncSession, giveaway_id: UUID, reason: str | None = None, *, actor_id: str) -> None:
    await _set_status(session, giveaway_id, ("frozen",), "active", actor_id=actor_id, action="unfreeze", reason=reason)
    await session.commit()


async def select_winner(session: AsyncSession, giveaway_id: UUID, *, actor_id: str,
                        force: bool = False, reason: str | None = None) -> FairnessProof:
    if force:
        return await selection.force_reselect(session, giveaway_id, _require_reason(reason, "force reselection"),
                                              actor_id=actor_id)
    proof, created = await selection.select_winner(session, giveaway_id, actor_id=actor_id)
    if not created:
        raise WinnerAlreadySelected("Winner already selected; use force reselection with a reason",
                                    proof=proof, giveaway_id=str(giveaway_id))
    return proof


async def reconcile_escrow(session: AsyncSession, giveaway_id: UUID, *, actor_id: str) -> dict:
    """Compare the account row with its journal; a mismatch halts payouts for the giveaway."""
    report = await escrow.reconcile(session, giveaway_id)
    if not report["consistent"] and not report["halted"]:
        reason = "reconciliation mismatch: " + "; ".join(report["mismatches"])
        await escrow.halt(session, giveaway_id, reason)
        audit.record(session, actor_id=actor_id, action="escrow_halt", target_type="escrow", target_id=giveaway_id,
                     old={"halted": False}, new={"halted": True}, reason=reason)
        await session.commit()
        report["halted"] = True
    return report


async def resume_payouts(session: AsyncSession, giveaway_id: UUID, reason: str, *, actor_id: str) -> dict:
    """Lift a halt once the books reconcile again."""
    reason = _require_reason(reason, "resume payouts")
    report = await escrow.reconcile(session, giveaway_id)
    if not report["consistent"]:
        raise EscrowInconsistency("Escrow still does not reconcile", giveaway_id=str(giveaway_id),
                                  mismatches=report["mismatches"])
    await escrow.resume(session, giveaway_id)
    audit.record(session, actor_id=actor_id, action="escrow_resume", target_type="escrow", target_id=giveaway_id,
                 old={"halted": report["halted"]}, new={"halted": False}, reason=reason)
    await session.commit()
    report["halted"] = False
    log.info("escrow_resumed", giveaway_id=str(giveaway_id), actor=actor_id)
    return report
