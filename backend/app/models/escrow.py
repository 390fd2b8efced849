from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Uuid, CheckConstraint, func
from app.db import Base


class EscrowAccount(Base):
    """
    Per-giveaway escrow balances (integer cents).
    Conservation: available + reserved + paid_out == gross_collected, all >= 0.
    ``halted`` blocks further automated payouts until an operator resumes.
    """
    __tablename__ = "escrow_accounts"

    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("giveaways.id", ondelete="CASCADE"), primary_key=True
    )
    gross_collected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_out_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    halted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    halted_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("available_amount >= 0", name="ck_escrow_available_nonneg"),
        CheckConstraint("reserved_amount >= 0", name="ck_escrow_reserved_nonneg"),
    )


class EscrowReservation(Base):
    """Funds earmarked for one payout. status: held -> consumed | released."""
    __tablename__ = "escrow_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_accounts.giveaway_id", ondelete="CASCADE"), index=True, nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="held")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_reservation_amount_pos"),
    )


class EscrowMovement(Base):
    """
    Append-only journal of escrow mutations.
    Kinds and their effect on the account:
      - CREDIT   => gross += amount, available += amount (confirmed entry payment)
      - RESERVE  => available -= amount, reserved += amount
      - RELEASE  => reserved -= amount, available += amount (payout failed)
      - SETTLE   => reserved -= amount, paid_out += amount (payout succeeded)
      - RESTORE  => paid_out -= amount, available += amount (transfer reversed)
    Idempotency: external_ref is unique (e.g. payment_intent id for CREDIT).
    """
    __tablename__ = "escrow_movements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_accounts.giveaway_id", ondelete="CASCADE"), index=True, nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    external_ref: Mapped[str | None] = mapped_column(String(96), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_escrow_movement_amount_pos"),
    )
