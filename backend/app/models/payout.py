from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Uuid, Index, CheckConstraint, func
from app.db import Base, JSONDoc


class Payout(Base):
    """
    One attempt at moving money out of (or back into) escrow.
    status: pending -> processing -> succeeded | failed, never backwards.
    A retry is a new row with attempt + 1 and a fresh idempotency_key.
    payout_type: winner_prize | creator_revenue | refund | reversal
    """
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("giveaways.id", ondelete="CASCADE"), index=True, nullable=False
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    payout_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)

    entry_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)          # refunds, prizes
    reverses_payout_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)            # reversals
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)  # tr_..., re_..., trr_...
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initiated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    note: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_amount_pos"),
        Index("ix_payouts_intent", "giveaway_id", "recipient_id", "payout_type"),
    )


class PayoutAccount(Base):
    """Recipient -> connected processor account (Stripe Connect)."""
    __tablename__ = "payout_accounts"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    processor_account_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # acct_...
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details: Mapped[dict] = mapped_column(JSONDoc, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
