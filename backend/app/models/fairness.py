from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, ForeignKey, Text, Uuid, UniqueConstraint, Index, func, text
from app.db import Base, JSONDoc


class FairnessCommitment(Base):
    """
    Commit-reveal record. ``server_seed_hash`` is public from commit time;
    ``server_seed`` stays private until ``revealed_at`` is set after close.
    """
    __tablename__ = "fairness_commitments"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("giveaways.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    server_seed_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    server_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    committed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revealed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EntrySnapshot(Base):
    __tablename__ = "entry_snapshots"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("giveaways.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)  # sha256 over the ordered ranges
    taken_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SnapshotRange(Base):
    """One frozen entry of a snapshot: tickets [range_start, range_end)."""
    __tablename__ = "entry_snapshot_ranges"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    snapshot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("entry_snapshots.id", ondelete="CASCADE"), index=True, nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    range_start: Mapped[int] = mapped_column(Integer, nullable=False)
    range_end: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("snapshot_id", "position", name="uq_snapshot_range_position"),
    )


class FairnessProof(Base):
    """
    Result of one draw. Draw 1 is the regular selection; each forced
    reselection appends draw n+1 and marks the previous proof superseded.
    Rows are never deleted.
    """
    __tablename__ = "fairness_proofs"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    giveaway_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("giveaways.id", ondelete="CASCADE"), index=True, nullable=False
    )
    draw_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    server_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    server_seed_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    excluded_entry_ids: Mapped[list] = mapped_column(JSONDoc, nullable=False, default=list)
    combined_entropy_input: Mapped[str] = mapped_column(Text(), nullable=False)
    derived_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    derived_random_value: Mapped[int] = mapped_column(Integer, nullable=False)
    eligible_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    winner_entry_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    winner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    supersede_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        # at-most-once per draw: concurrent selections collide here
        UniqueConstraint("giveaway_id", "draw_number", name="uq_proof_giveaway_draw"),
        # and at most one live proof
        Index("uq_fairness_proofs_current", "giveaway_id", unique=True,
              postgresql_where=text("superseded_at IS NULL"), sqlite_where=text("superseded_at IS NULL")),
    )
