from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, DateTime, Text, Uuid, Index, func
from app.db import Base, JSONDoc


class AuditLogEntry(Base):
    """Append-only. Nothing in the codebase updates or deletes these rows."""
    __tablename__ = "admin_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)       # admin user id, "system" or "webhook"
    action: Mapped[str] = mapped_column(String(48), nullable=False)
    target_type: Mapped[str] = mapped_column(String(24), nullable=False)    # giveaway | entry | payout | escrow | webhook_delivery
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_values: Mapped[dict | None] = mapped_column(JSONDoc, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSONDoc, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_audit_target", "target_type", "target_id"),
    )


class DomainEvent(Base):
    """Outbox for notification-facing events; published to Redis by a job."""
    __tablename__ = "domain_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(48), nullable=False)  # winner_selected | payout_succeeded | ...
    giveaway_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSONDoc, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
