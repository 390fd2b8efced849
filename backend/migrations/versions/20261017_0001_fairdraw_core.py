from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB(astext_type=sa.Text())

def _ts(name: str, nullable: bool = True, default: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable,
                     server_default=sa.text("now()") if default else None)

def upgrade() -> None:
    op.create_table(
        "giveaways",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("creator_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="draft"),
        sa.Column("entry_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_entries", sa.Integer(), nullable=True),
        sa.Column("prize_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tickets_sold", sa.Integer(), nullable=False, server_default="0"),
        _ts("closes_at", nullable=False),
        sa.Column("winner_user_id", sa.Uuid(), nullable=True),
        _ts("winner_selected_at"),
        _ts("created_at", nullable=False, default=True),
    )
    op.create_index("ix_giveaways_creator_id", "giveaways", ["creator_id"])
    op.create_index("ix_giveaways_due", "giveaways", ["status", "closes_at"])

    op.create_table(
        "entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("giveaways.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("ticket_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_reference", sa.String(length=64), nullable=True, unique=True),
        _ts("created_at", nullable=False, default=True),
        sa.CheckConstraint("ticket_count >= 0", name="ck_entries_ticket_count_nonneg"),
        sa.CheckConstraint(
            "payment_status IN ('pending','completed','failed','refunded','not_required')",
            name="ck_entries_payment_status",
        ),
    )
    op.create_index("ix_entries_giveaway_id", "entries", ["giveaway_id"])
    op.create_index("ix_entries_user_id", "entries", ["user_id"])
    op.create_index("ix_entries_draw_order", "entries", ["giveaway_id", "created_at", "id"])

    op.create_table(
        "fairness_commitments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("giveaways.id", ondelete="CASCADE"),
                  nullable=False, unique=True),
        sa.Column("server_seed_hash", sa.String(length=64), nullable=False),
        sa.Column("server_seed", sa.String(length=64), nullable=False),
        _ts("committed_at", nullable=False),
        _ts("revealed_at"),
    )

    op.create_table(
        "entry_snapshots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("giveaways.id", ondelete="CASCADE"),
                  nullable=False, unique=True),
        sa.Column("total_tickets", sa.Integer(), nullable=False),
        sa.Column("entry_count", sa.Integer(), nullable=False),
        sa.Column("digest", sa.String(length=64), nullable=False),
        _ts("taken_at", nullable=False),
    )
    op.create_table(
        "entry_snapshot_ranges",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("snapshot_id", sa.Uuid(), sa.ForeignKey("entry_snapshots.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("entry_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("range_start", sa.Integer(), nullable=False),
        sa.Column("range_end", sa.Integer(), nullable=False),
        sa.UniqueConstraint("snapshot_id", "position", name="uq_snapshot_range_position"),
        sa.CheckConstraint("range_end > range_start", name="ck_snapshot_range_nonempty"),
    )
    op.create_index("ix_entry_snapshot_ranges_snapshot_id", "entry_snapshot_ranges", ["snapshot_id"])

    op.create_table(
        "fairness_proofs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("giveaways.id", ondelete="CASCADE"), nullable=False),
        sa.Column("draw_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("server_seed", sa.String(length=64), nullable=False),
        sa.Column("server_seed_hash", sa.String(length=64), nullable=False),
        sa.Column("snapshot_digest", sa.String(length=64), nullable=False),
        sa.Column("excluded_entry_ids", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("combined_entropy_input", sa.Text(), nullable=False),
        sa.Column("derived_hash", sa.String(length=64), nullable=False),
        sa.Column("derived_random_value", sa.Integer(), nullable=False),
        sa.Column("eligible_tickets", sa.Integer(), nullable=False),
        sa.Column("winner_entry_id", sa.Uuid(), nullable=False),
        sa.Column("winner_user_id", sa.Uuid(), nullable=False),
        _ts("computed_at", nullable=False),
        _ts("superseded_at"),
        sa.Column("supersede_reason", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("giveaway_id", "draw_number", name="uq_proof_giveaway_draw"),
    )
    op.create_index("ix_fairness_proofs_giveaway_id", "fairness_proofs", ["giveaway_id"])
    # at most one live proof per giveaway
    op.create_index(
        "uq_fairness_proofs_current", "fairness_proofs", ["giveaway_id"], unique=True,
        postgresql_where=sa.text("superseded_at IS NULL"),
    )

    op.create_table(
        "escrow_accounts",
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("giveaways.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("gross_collected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_out_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("halted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("halted_reason", sa.String(length=255), nullable=True),
        _ts("updated_at", nullable=False, default=True),
        sa.CheckConstraint("available_amount >= 0", name="ck_escrow_available_nonneg"),
        sa.CheckConstraint("reserved_amount >= 0", name="ck_escrow_reserved_nonneg"),
    )
    op.create_table(
        "escrow_reservations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("escrow_accounts.giveaway_id", ondelete="CASCADE"),
                  nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="held"),
        _ts("created_at", nullable=False, default=True),
        _ts("settled_at"),
        sa.CheckConstraint("amount > 0", name="ck_reservation_amount_pos"),
        sa.CheckConstraint("status IN ('held','consumed','released')", name="ck_reservation_status"),
    )
    op.create_index("ix_escrow_reservations_giveaway_id", "escrow_reservations", ["giveaway_id"])
    op.create_table(
        "escrow_movements",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("escrow_accounts.giveaway_id", ondelete="CASCADE"),
                  nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reservation_id", sa.Uuid(), nullable=True),
        sa.Column("external_ref", sa.String(length=96), nullable=True, unique=True),
        _ts("created_at", nullable=False, default=True),
        sa.CheckConstraint("amount > 0", name="ck_escrow_movement_amount_pos"),
        sa.CheckConstraint("kind IN ('CREDIT','RESERVE','RELEASE','SETTLE','RESTORE')", name="ck_escrow_movement_kind"),
    )
    op.create_index("ix_escrow_movements_giveaway_id", "escrow_movements", ["giveaway_id"])
    op.create_index("ix_escrow_movements_reservation_id", "escrow_movements", ["reservation_id"])

    op.create_table(
        "payouts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("giveaway_id", sa.Uuid(), sa.ForeignKey("giveaways.id", ondelete="CASCADE"), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), nullable=False),
        sa.Column("payout_type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False, unique=True),
        sa.Column("entry_id", sa.Uuid(), nullable=True),
        sa.Column("reverses_payout_id", sa.Uuid(), nullable=True),
        sa.Column("reservation_id", sa.Uuid(), nullable=True),
        sa.Column("external_reference", sa.String(length=64), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("initiated_by", sa.String(length=64), nullable=True),
        sa.Column("note", sa.String(length=255), nullable=True),
        _ts("created_at", nullable=False, default=True),
        _ts("processing_at"),
        _ts("completed_at"),
        sa.CheckConstraint("amount > 0", name="ck_payout_amount_pos"),
        sa.CheckConstraint("status IN ('pending','processing','succeeded','failed')", name="ck_payout_status"),
        sa.CheckConstraint(
            "payout_type IN ('winner_prize','creator_revenue','refund','reversal')", name="ck_payout_type",
        ),
    )
    op.create_index("ix_payouts_giveaway_id", "payouts", ["giveaway_id"])
    op.create_index("ix_payouts_recipient_id", "payouts", ["recipient_id"])
    op.create_index("ix_payouts_entry_id", "payouts", ["entry_id"])
    op.create_index("ix_payouts_external_reference", "payouts", ["external_reference"])
    op.create_index("ix_payouts_intent", "payouts", ["giveaway_id", "recipient_id", "payout_type"])

    op.create_table(
        "payout_accounts",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("processor_account_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("details", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("updated_at", nullable=False, default=True),
    )

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("webhook_id", sa.String(length=96), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_attempt_at"),
        _ts("next_retry_at"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("processed_at"),
        _ts("created_at", nullable=False, default=True),
        sa.UniqueConstraint("webhook_id", "event_type", name="uq_webhook_delivery_once"),
        sa.CheckConstraint(
            "status IN ('pending','processing','succeeded','retrying','failed')", name="ck_webhook_delivery_status",
        ),
    )
    op.create_index("ix_webhook_deliveries_due", "webhook_deliveries", ["status", "next_retry_at"])

    op.create_table(
        "admin_audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=48), nullable=False),
        sa.Column("target_type", sa.String(length=24), nullable=False),
        sa.Column("target_id", sa.String(length=64), nullable=False),
        sa.Column("old_values", JSONB, nullable=True),
        sa.Column("new_values", JSONB, nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        _ts("created_at", nullable=False, default=True),
    )
    op.create_index("ix_audit_target", "admin_audit_log", ["target_type", "target_id"])
    # append-only at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION admin_audit_log_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'admin_audit_log is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_admin_audit_log_immutable
        BEFORE UPDATE OR DELETE ON admin_audit_log
        FOR EACH ROW EXECUTE FUNCTION admin_audit_log_immutable();
    """)

    op.create_table(
        "domain_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("event_type", sa.String(length=48), nullable=False),
        sa.Column("giveaway_id", sa.Uuid(), nullable=True),
        sa.Column("payload", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("created_at", nullable=False, default=True),
        _ts("published_at"),
    )
    op.create_index("ix_domain_events_giveaway_id", "domain_events", ["giveaway_id"])
    op.create_index("ix_domain_events_published_at", "domain_events", ["published_at"])

def downgrade() -> None:
    op.drop_table("domain_events")
    op.execute("DROP TRIGGER IF EXISTS trg_admin_audit_log_immutable ON admin_audit_log")
    op.execute("DROP FUNCTION IF EXISTS admin_audit_log_immutable()")
    op.drop_table("admin_audit_log")
    op.drop_table("webhook_deliveries")
    op.drop_table("payout_accounts")
    op.drop_table("payouts")
    op.drop_table("escrow_movements")
    op.drop_table("escrow_reservations")
    op.drop_table("escrow_accounts")
    op.drop_table("fairness_proofs")
    op.drop_table("entry_snapshot_ranges")
    op.drop_table("entry_snapshots")
    op.drop_table("fairness_commitments")
    op.drop_table("entries")
    op.drop_table("giveaways")
