from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, Text, Uuid, UniqueConstraint, Index, func
from app.db import Base, JSONDoc


class WebhookDelivery(Base):
    """
    Inbound processor event. (webhook_id, event_type) is the dedup boundary:
    a redelivery of a succeeded event returns the stored outcome unprocessed.
    status: pending -> processing -> succeeded | retrying | failed
    """
    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    webhook_id: Mapped[str] = mapped_column(String(96), nullable=False)   # evt_...
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONDoc, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("webhook_id", "event_type", name="uq_webhook_delivery_once"),
        Index("ix_webhook_deliveries_due", "status", "next_retry_at"),
    )
