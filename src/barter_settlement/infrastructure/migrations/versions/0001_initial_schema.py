"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from collections.abc import Sequence
from datetime import UTC, datetime

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
UTCDateTime = sa.DateTime(timezone=True)

SWAP_STATUSES = (
    "'pending', 'accepted', 'awaiting_delivery', 'in_delivery', 'partially_delivered', "
    "'delivered', 'cancel_requested', 'disputed', 'completed', 'cancelled', "
    "'cancelled_mutual', 'resolved'"
)
TRANSACTION_TYPES = (
    "'grant', 'escrow_hold', 'swap_completed', 'auto_complete_release', 'escrow_refund', "
    "'deposit_lock', 'deposit_release', 'compensation'"
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("display_name", sa.String(120), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("valor_balance", sa.Integer(), nullable=False,
                  comment="Spendable Valor. Mutated only by ValorLedger."),
        sa.Column("locked_valor", sa.Integer(), nullable=False,
                  comment="Valor locked as owner deposits on accepted swaps"),
        sa.Column("trust_score", sa.Integer(), nullable=False),
        sa.Column("is_suspended", sa.Boolean(), nullable=False),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.Column("updated_at", UTCDateTime, nullable=False),
        sa.CheckConstraint("valor_balance >= 0", name="ck_user_balance_non_negative"),
        sa.CheckConstraint("locked_valor >= 0", name="ck_user_locked_non_negative"),
        sa.CheckConstraint(
            "trust_score >= 0 AND trust_score <= 100", name="ck_user_trust_bounds"
        ),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("valor_price", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(80), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.Column("updated_at", UTCDateTime, nullable=False),
        sa.CheckConstraint("valor_price >= 0", name="ck_product_price_non_negative"),
        sa.CheckConstraint(
            "status IN ('active', 'reserved', 'swapped')", name="ck_product_valid_status"
        ),
    )
    op.create_index("idx_product_owner", "products", ["owner_id"])

    op.create_table(
        "swap_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("requester_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("offered_product_id", sa.Uuid(), sa.ForeignKey("products.id"), nullable=True,
                  comment="Requester's product in an item-for-item swap"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("pending_valor_amount", sa.Integer(), nullable=True,
                  comment="Valor held from the requester (NULL when there is no Valor leg)"),
        sa.Column("escrow_state", sa.String(16), nullable=False,
                  comment="Claim flag: held -> released | refunded, exactly once"),
        sa.Column("owner_deposit", sa.Integer(), nullable=False,
                  comment="Owner stake fixed at acceptance"),
        sa.Column("owner_deposit_locked", sa.Boolean(), nullable=False),
        sa.Column("risk_tier", sa.String(8), nullable=True),
        sa.Column("negotiation_status", sa.String(16), nullable=True),
        sa.Column("requester_price", sa.Integer(), nullable=True,
                  comment="Requester's standing price proposal"),
        sa.Column("owner_price", sa.Integer(), nullable=True,
                  comment="Owner's standing price proposal"),
        sa.Column("counter_offer_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_agreed_at", UTCDateTime, nullable=True),
        sa.Column("status", sa.String(24), nullable=False,
                  comment="Current lifecycle state (guarded by SwapStateMachine)"),
        sa.Column("status_before_cancel_request", sa.String(24), nullable=True),
        sa.Column("cancel_requested_by", sa.Uuid(), nullable=True),
        sa.Column("auto_complete_eligible", sa.Boolean(), nullable=False),
        sa.Column("delivery_method", sa.String(24), nullable=True),
        sa.Column("delivery_point_id", sa.String(64), nullable=True),
        sa.Column("custom_location", sa.Text(), nullable=True),
        sa.Column("delivery_code", sa.String(40), nullable=True),
        sa.Column("verification_code", sa.String(6), nullable=True),
        sa.Column("delivery_code_b", sa.String(40), nullable=True),
        sa.Column("verification_code_b", sa.String(6), nullable=True),
        sa.Column("verification_code_used", sa.Boolean(), nullable=False),
        sa.Column("verification_code_b_used", sa.Boolean(), nullable=False),
        sa.Column("packaging_photos", JSONType, nullable=False),
        sa.Column("receiving_photos", JSONType, nullable=False),
        sa.Column("owner_received_product", sa.Boolean(), nullable=False),
        sa.Column("requester_received_product", sa.Boolean(), nullable=False),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.Column("updated_at", UTCDateTime, nullable=False),
        sa.Column("accepted_at", UTCDateTime, nullable=True),
        sa.Column("delivered_at", UTCDateTime, nullable=True),
        sa.Column("dispute_window_ends_at", UTCDateTime, nullable=True),
        sa.Column("delivery_confirm_deadline", UTCDateTime, nullable=True),
        sa.Column("completed_at", UTCDateTime, nullable=True),
        sa.Column("cancelled_at", UTCDateTime, nullable=True),
        sa.CheckConstraint(f"status IN ({SWAP_STATUSES})", name="ck_swap_valid_status"),
        sa.CheckConstraint(
            "escrow_state IN ('none', 'held', 'released', 'refunded')",
            name="ck_swap_valid_escrow_state",
        ),
        sa.CheckConstraint(
            "pending_valor_amount IS NULL OR pending_valor_amount > 0",
            name="ck_swap_positive_amount",
        ),
        sa.CheckConstraint("owner_deposit >= 0", name="ck_swap_deposit_non_negative"),
        sa.CheckConstraint(
            "counter_offer_count >= 0", name="ck_swap_counter_offers_non_negative"
        ),
        sa.CheckConstraint("owner_id <> requester_id", name="ck_swap_distinct_parties"),
    )
    op.create_index("idx_swap_status", "swap_requests", ["status"])
    op.create_index("idx_swap_status_updated", "swap_requests", ["status", "updated_at"])
    op.create_index(
        "idx_swap_dispute_window", "swap_requests", ["status", "dispute_window_ends_at"]
    )
    op.create_index("idx_swap_owner", "swap_requests", ["owner_id"])
    op.create_index("idx_swap_requester", "swap_requests", ["requester_id"])

    op.create_table(
        "valor_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("from_user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("to_user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("fee", sa.Integer(), nullable=False),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column(
            "swap_request_id", sa.Uuid(), sa.ForeignKey("swap_requests.id"), nullable=True
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("fee_breakdown", JSONType, nullable=True),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_txn_positive_amount"),
        sa.CheckConstraint("fee >= 0 AND fee <= amount", name="ck_txn_fee_bounds"),
        sa.CheckConstraint("net_amount = amount - fee", name="ck_txn_net_matches"),
        sa.CheckConstraint(f"type IN ({TRANSACTION_TYPES})", name="ck_txn_valid_type"),
    )
    op.create_index("idx_txn_swap", "valor_transactions", ["swap_request_id"])
    op.create_index("idx_txn_from", "valor_transactions", ["from_user_id"])
    op.create_index("idx_txn_to", "valor_transactions", ["to_user_id"])

    op.create_table(
        "dispute_reports",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "swap_request_id", sa.Uuid(), sa.ForeignKey("swap_requests.id"), nullable=False
        ),
        sa.Column("reporter_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reported_user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence", JSONType, nullable=False,
                  comment="Reporter's photo references"),
        sa.Column("reported_evidence", JSONType, nullable=False,
                  comment="Reported party's photo references"),
        sa.Column("reported_evidence_note", sa.Text(), nullable=True),
        sa.Column("evidence_submitted_late", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("evidence_deadline", UTCDateTime, nullable=False),
        sa.Column("outcome", sa.String(16), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("compensation_amount", sa.Integer(), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), nullable=True),
        sa.Column("resolved_at", UTCDateTime, nullable=True),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.Column("updated_at", UTCDateTime, nullable=False),
        sa.CheckConstraint(
            "status IN ('open', 'evidence_submitted', 'resolved', 'rejected')",
            name="ck_dispute_valid_status",
        ),
    )
    op.create_index("idx_dispute_swap", "dispute_reports", ["swap_request_id"])
    op.create_index("idx_dispute_status", "dispute_reports", ["status"])

    op.create_table(
        "swap_status_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "swap_request_id", sa.Uuid(), sa.ForeignKey("swap_requests.id"), nullable=False
        ),
        sa.Column("from_status", sa.String(24), nullable=True,
                  comment="NULL for the creation entry"),
        sa.Column("to_status", sa.String(24), nullable=False),
        sa.Column("changed_by", sa.String(64), nullable=False, comment="User id or SYSTEM"),
        sa.Column("reason", sa.Text(), nullable=True,
                  comment="Free text or encoded sub-event, e.g. MUTUAL_CANCEL_REQUEST|reason|note"),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column("created_at", UTCDateTime, nullable=False),
    )
    op.create_index("idx_status_log_swap", "swap_status_logs", ["swap_request_id"])
    op.create_index("idx_status_log_created_at", "swap_status_logs", ["created_at"])

    stats = op.create_table(
        "system_stats",
        sa.Column("id", sa.String(16), primary_key=True),
        sa.Column("total_swaps_completed", sa.Integer(), nullable=False),
        sa.Column("total_fees_collected", sa.Integer(), nullable=False),
        sa.Column("community_pool_valor", sa.Integer(), nullable=False),
        sa.Column("total_compensation_paid", sa.Integer(), nullable=False),
        sa.Column("updated_at", UTCDateTime, nullable=False),
    )
    op.bulk_insert(
        stats,
        [
            {
                "id": "main",
                "total_swaps_completed": 0,
                "total_fees_collected": 0,
                "community_pool_valor": 0,
                "total_compensation_paid": 0,
                "updated_at": datetime.now(UTC),
            }
        ],
    )

    op.create_table(
        "negotiation_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "swap_request_id", sa.Uuid(), sa.ForeignKey("swap_requests.id"), nullable=False
        ),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("proposed_price", sa.Integer(), nullable=True),
        sa.Column("previous_price", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.CheckConstraint(
            "action IN ('propose', 'counter', 'accept', 'reject')",
            name="ck_negotiation_valid_action",
        ),
        sa.CheckConstraint(
            "proposed_price IS NULL OR proposed_price > 0",
            name="ck_negotiation_positive_price",
        ),
    )
    op.create_index("idx_negotiation_swap", "negotiation_events", ["swap_request_id"])

    op.create_table(
        "swap_feedback",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "swap_request_id", sa.Uuid(), sa.ForeignKey("swap_requests.id"), nullable=False
        ),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("target_user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_fair", sa.Boolean(), nullable=False),
        sa.Column("fairness_score", sa.Integer(), nullable=False),
        sa.Column("price_accuracy", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("penalized", sa.Boolean(), nullable=False,
                  comment="Whether the rating cost the target trust points"),
        sa.Column("created_at", UTCDateTime, nullable=False),
        sa.CheckConstraint(
            "fairness_score >= 1 AND fairness_score <= 5", name="ck_feedback_fairness_range"
        ),
        sa.CheckConstraint(
            "price_accuracy >= 1 AND price_accuracy <= 5", name="ck_feedback_accuracy_range"
        ),
        sa.UniqueConstraint("swap_request_id", "user_id", name="uq_feedback_swap_author"),
    )
    op.create_index("idx_feedback_target", "swap_feedback", ["target_user_id"])


def downgrade() -> None:
    op.drop_index("idx_feedback_target", table_name="swap_feedback")
    op.drop_table("swap_feedback")
    op.drop_index("idx_negotiation_swap", table_name="negotiation_events")
    op.drop_table("negotiation_events")
    op.drop_table("system_stats")
    op.drop_index("idx_status_log_created_at", table_name="swap_status_logs")
    op.drop_index("idx_status_log_swap", table_name="swap_status_logs")
    op.drop_table("swap_status_logs")
    op.drop_index("idx_dispute_status", table_name="dispute_reports")
    op.drop_index("idx_dispute_swap", table_name="dispute_reports")
    op.drop_table("dispute_reports")
    op.drop_index("idx_txn_to", table_name="valor_transactions")
    op.drop_index("idx_txn_from", table_name="valor_transactions")
    op.drop_index("idx_txn_swap", table_name="valor_transactions")
    op.drop_table("valor_transactions")
    for index in (
        "idx_swap_requester",
        "idx_swap_owner",
        "idx_swap_dispute_window",
        "idx_swap_status_updated",
        "idx_swap_status",
    ):
        op.drop_index(index, table_name="swap_requests")
    op.drop_table("swap_requests")
    op.drop_index("idx_product_owner", table_name="products")
    op.drop_table("products")
    op.drop_table("users")
