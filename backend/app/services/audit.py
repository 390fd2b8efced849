from __future__ import annotations
from typing import Any
from uuid import UUID
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.audit import AuditLogEntry, DomainEvent

log = structlog.get_logger()

SYSTEM_ACTOR = "system"
WEBHOOK_ACTOR = "webhook"


def _jsonable(values: dict[str, Any] | None) -> dict[str, Any] | None:
    if values is None:
        return None
    out = {}
    for k, v in values.items():
        if isinstance(v, UUID):
            v = str(v)
        elif hasattr(v, "isoformat"):
            v = v.isoformat()
        elif isinstance(v, (list, tuple)):
            v = [str(x) if isinstance(x, UUID) else x for x in v]
        out[k] = v
    return out


def record(
    session: AsyncSession,
    *,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: Any,
    old: dict | None = None,
    new: dict | None = None,
    reason: str | None = None,
) -> AuditLogEntry:
    """Stage an audit row in the caller's transaction; it commits with the mutation it describes."""
    rid = structlog.contextvars.get_contextvars().get("request_id")
    row = AuditLogEntry(
        actor_id=str(actor_id),
        action=action,
        target_type=target_type,
        target_id=str(target_id),
        old_values=_jsonable(old),
        new_values=_jsonable(new),
        reason=reason,
        request_id=rid,
    )
    session.add(row)
    log.info("audit", actor=str(actor_id), action=action, target_type=target_type, target_id=str(target_id))
    return row


def emit(session: AsyncSession, event_type: str, *, giveaway_id: UUID | None = None, **payload: Any) -> DomainEvent:
    """Outbox write; published asynchronously by jobs.publish_events."""
    ev = DomainEvent(event_type=event_type, giveaway_id=giveaway_id, payload=_jsonable(payload) or {})
    session.add(ev)
    return ev


async def audit_trail(session: AsyncSession, *, target_type: str | None = None, target_id: str | None = None,
                      limit: int = 100) -> list[AuditLogEntry]:
    q = select(AuditLogEntry)
    if target_type:
        q = q.where(AuditLogEntry.target_type == target_type)
    if target_id:
        q = q.where(AuditLogEntry.target_id == str(target_id))
    q = q.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id).limit(limit)
    return list((await session.execute(q)).scalars().all())
