from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, ForeignKey, Uuid, Index, func
from app.db import Base


class Giveaway(Base):
    __tablename__ = "giveaways"
    __table_args__ = (
        Index("ix_giveaways_due", "status", "closes_at"),
    )
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    # draft|pending_approval|active|frozen|completed|rejected|cancelled
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="draft")
    entry_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)      # cents per ticket
    max_entries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prize_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)    # cents
    tickets_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closes_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    winner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    winner_selected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Entry(Base):
    """
    One purchase (or AMOE claim) of ``ticket_count`` tickets.
    payment_status: pending -> completed | failed; completed -> refunded; not_required for AMOE.
    Only completed and not_required entries enter the draw snapshot.
    """
    __tablename__ = "entries"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("giveaways.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    ticket_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)     # cents
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    payment_reference: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)  # pi_...
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_entries_draw_order", "giveaway_id", "created_at", "id"),
    )
