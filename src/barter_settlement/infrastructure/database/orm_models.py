"""SQLAlchemy 2.0 ORM models for the swap settlement engine.

Nine tables:
    1. users               - Ledger-relevant slice of a marketplace user.
    2. products            - Catalog slice the engine reserves and marks swapped.
    3. swap_requests       - One swap between an owner and a requester.
    4. valor_transactions  - Append-only Valor journal.
    5. dispute_reports     - Disputes raised inside the dispute window.
    6. swap_status_logs    - Append-only audit log of every status change.
    7. system_stats        - Single-row platform counters (fees, community pool).
    8. negotiation_events  - Price proposals and answers on a pending offer.
    9. swap_feedback       - Post-swap fairness ratings, one per party.

Design decisions:
    - UUIDs as primary keys (no sequential leakage of swap volume).
    - Valor is a whole-number currency: balances and amounts are Integer.
    - CHECK constraints keep balances non-negative and trust in [0, 100]
      even if application code misbehaves.
    - JSON columns (JSONB on PostgreSQL) for photo lists and fee breakdowns.
    - Timestamps are stored and returned as UTC-aware datetimes on every
      backend, including SQLite used by tests and the simulation.
    - valor_transactions and swap_status_logs are append-only: no UPDATE or
      DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from barter_settlement.domain.enums import (
    DisputeStatus,
    EscrowState,
    NegotiationAction,
    ProductStatus,
    SwapStatus,
    TransactionType,
    UserRole,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that normalizes to UTC and re-attaches it on load."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_clause(values) -> str:  # noqa: ANN001
    return ", ".join(f"'{v.value}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. users
# ---------------------------------------------------------------------------
class User(Base):
    """A marketplace member, as far as balances and trust are concerned."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    role: Mapped[str] = mapped_column(
        String(16), nullable=False, default=UserRole.USER.value
    )

    # --- Balances ---
    valor_balance: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Spendable Valor. Mutated only by ValorLedger.",
    )
    locked_valor: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Valor locked as owner deposits on accepted swaps",
    )

    # --- Reputation ---
    trust_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("valor_balance >= 0", name="ck_user_balance_non_negative"),
        CheckConstraint("locked_valor >= 0", name="ck_user_locked_non_negative"),
        CheckConstraint(
            "trust_score >= 0 AND trust_score <= 100", name="ck_user_trust_bounds"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<User id={self.id} balance={self.valor_balance} "
            f"locked={self.locked_valor} trust={self.trust_score}>"
        )


# ---------------------------------------------------------------------------
# 2. products
# ---------------------------------------------------------------------------
class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    valor_price: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ProductStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("valor_price >= 0", name="ck_product_price_non_negative"),
        CheckConstraint(
            f"status IN ({_in_clause(ProductStatus)})", name="ck_product_valid_status"
        ),
        Index("idx_product_owner", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} price={self.valor_price} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. swap_requests
# ---------------------------------------------------------------------------
class SwapRequest(Base):
    """A swap between a product owner and a requester.

    Never deleted: terminal statuses are permanent and the row stays as the
    anchor for its journal entries, status logs and disputes.
    """

    __tablename__ = "swap_requests"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants & Goods ---
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False
    )
    offered_product_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("products.id"),
        nullable=True,
        comment="Requester's product in an item-for-item swap",
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Escrow ---
    pending_valor_amount: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Valor held from the requester (NULL when there is no Valor leg)",
    )
    escrow_state: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=EscrowState.NONE.value,
        comment="Claim flag: held -> released | refunded, exactly once",
    )
    owner_deposit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Owner stake fixed at acceptance",
    )
    owner_deposit_locked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    risk_tier: Mapped[str | None] = mapped_column(String(8), nullable=True)

    # --- Negotiation (pending offers only) ---
    negotiation_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    requester_price: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Requester's standing price proposal"
    )
    owner_price: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Owner's standing price proposal"
    )
    counter_offer_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    price_agreed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default=SwapStatus.PENDING.value,
        comment="Current lifecycle state (guarded by SwapStateMachine)",
    )
    status_before_cancel_request: Mapped[str | None] = mapped_column(
        String(24), nullable=True
    )
    cancel_requested_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    auto_complete_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # --- Delivery ---
    delivery_method: Mapped[str | None] = mapped_column(String(24), nullable=True)
    delivery_point_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    verification_code: Mapped[str | None] = mapped_column(String(6), nullable=True)
    delivery_code_b: Mapped[str | None] = mapped_column(String(40), nullable=True)
    verification_code_b: Mapped[str | None] = mapped_column(String(6), nullable=True)
    verification_code_used: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    verification_code_b_used: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    packaging_photos: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    receiving_photos: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    owner_received_product: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    requester_received_product: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dispute_window_ends_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    delivery_confirm_deadline: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause(SwapStatus)})", name="ck_swap_valid_status"
        ),
        CheckConstraint(
            f"escrow_state IN ({_in_clause(EscrowState)})",
            name="ck_swap_valid_escrow_state",
        ),
        CheckConstraint(
            "pending_valor_amount IS NULL OR pending_valor_amount > 0",
            name="ck_swap_positive_amount",
        ),
        CheckConstraint("owner_deposit >= 0", name="ck_swap_deposit_non_negative"),
        CheckConstraint(
            "counter_offer_count >= 0", name="ck_swap_counter_offers_non_negative"
        ),
        CheckConstraint("owner_id <> requester_id", name="ck_swap_distinct_parties"),
        Index("idx_swap_status", "status"),
        Index("idx_swap_status_updated", "status", "updated_at"),
        Index("idx_swap_dispute_window", "status", "dispute_window_ends_at"),
        Index("idx_swap_owner", "owner_id"),
        Index("idx_swap_requester", "requester_id"),
    )

    @property
    def is_item_for_item(self) -> bool:
        return self.offered_product_id is not None

    def counterparty_of(self, user_id: uuid.UUID) -> uuid.UUID:
        return self.requester_id if user_id == self.owner_id else self.owner_id

    def __repr__(self) -> str:
        return (
            f"<SwapRequest id={self.id} status={self.status} "
            f"amount={self.pending_valor_amount} escrow={self.escrow_state}>"
        )


# ---------------------------------------------------------------------------
# 4. valor_transactions (Append-Only Journal)
# ---------------------------------------------------------------------------
class ValorTransaction(Base):
    """Immutable record of a single Valor movement.

    ``from_user_id`` NULL means the Valor came from the platform or from a
    swap's escrow; ``to_user_id`` NULL means it went into escrow or to the
    platform. Deposit entries move Valor between a user's spendable and
    locked balances and carry both ids equal to that user.
    """

    __tablename__ = "valor_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    from_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    to_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    swap_request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("swap_requests.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    fee_breakdown: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_txn_positive_amount"),
        CheckConstraint("fee >= 0 AND fee <= amount", name="ck_txn_fee_bounds"),
        CheckConstraint("net_amount = amount - fee", name="ck_txn_net_matches"),
        CheckConstraint(
            f"type IN ({_in_clause(TransactionType)})", name="ck_txn_valid_type"
        ),
        Index("idx_txn_swap", "swap_request_id"),
        Index("idx_txn_from", "from_user_id"),
        Index("idx_txn_to", "to_user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ValorTransaction id={self.id} type={self.type} "
            f"{self.from_user_id}->{self.to_user_id} amount={self.amount} fee={self.fee}>"
        )


# ---------------------------------------------------------------------------
# 5. dispute_reports
# ---------------------------------------------------------------------------
class DisputeReport(Base):
    __tablename__ = "dispute_reports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    swap_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("swap_requests.id"), nullable=False
    )
    reporter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    reported_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list, comment="Reporter's photo references"
    )
    reported_evidence: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list, comment="Reported party's photo references"
    )
    reported_evidence_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_submitted_late: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    status: Mapped[str] = mapped_column(
        String(24), nullable=False, default=DisputeStatus.OPEN.value
    )
    evidence_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # --- Resolution ---
    outcome: Mapped[str | None] = mapped_column(String(16), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    compensation_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause(DisputeStatus)})", name="ck_dispute_valid_status"
        ),
        Index("idx_dispute_swap", "swap_request_id"),
        Index("idx_dispute_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<DisputeReport id={self.id} swap={self.swap_request_id} "
            f"type={self.type} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# 6. swap_status_logs (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class SwapStatusLog(Base):
    """Immutable audit record of every status change in a swap's lifecycle.

    Sub-events that do not change status (a partial mutual-cancel request
    note, late evidence) are still logged with from_status == to_status.
    """

    __tablename__ = "swap_status_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    swap_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("swap_requests.id"), nullable=False
    )
    from_status: Mapped[str | None] = mapped_column(
        String(24), nullable=True, comment="NULL for the creation entry"
    )
    to_status: Mapped[str] = mapped_column(String(24), nullable=False)
    changed_by: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="User id or SYSTEM",
    )
    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Free text or encoded sub-event, e.g. MUTUAL_CANCEL_REQUEST|reason|note",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_status_log_swap", "swap_request_id"),
        Index("idx_status_log_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SwapStatusLog swap={self.swap_request_id} "
            f"{self.from_status}->{self.to_status} by={self.changed_by}>"
        )


# ---------------------------------------------------------------------------
# 7. system_stats
# ---------------------------------------------------------------------------
class SystemStats(Base):
    __tablename__ = "system_stats"

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default="main")
    total_swaps_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_fees_collected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    community_pool_valor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_compensation_paid: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<SystemStats swaps={self.total_swaps_completed} "
            f"fees={self.total_fees_collected} pool={self.community_pool_valor}>"
        )


# ---------------------------------------------------------------------------
# 8. negotiation_events (Append-Only)
# ---------------------------------------------------------------------------
class NegotiationEvent(Base):
    """One move in the price negotiation on a pending offer."""

    __tablename__ = "negotiation_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    swap_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("swap_requests.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    proposed_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            f"action IN ({_in_clause(NegotiationAction)})", name="ck_negotiation_valid_action"
        ),
        CheckConstraint(
            "proposed_price IS NULL OR proposed_price > 0",
            name="ck_negotiation_positive_price",
        ),
        Index("idx_negotiation_swap", "swap_request_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<NegotiationEvent swap={self.swap_request_id} action={self.action} "
            f"price={self.proposed_price}>"
        )


# ---------------------------------------------------------------------------
# 9. swap_feedback
# ---------------------------------------------------------------------------
class SwapFeedback(Base):
    """A party's fairness rating of the counterparty after a completed swap."""

    __tablename__ = "swap_feedback"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    swap_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("swap_requests.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    target_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    is_fair: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    fairness_score: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    price_accuracy: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    penalized: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether the rating cost the target trust points",
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "fairness_score >= 1 AND fairness_score <= 5", name="ck_feedback_fairness_range"
        ),
        CheckConstraint(
            "price_accuracy >= 1 AND price_accuracy <= 5", name="ck_feedback_accuracy_range"
        ),
        UniqueConstraint("swap_request_id", "user_id", name="uq_feedback_swap_author"),
        Index("idx_feedback_target", "target_user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SwapFeedback swap={self.swap_request_id} by={self.user_id} "
            f"fair={self.is_fair} score={self.fairness_score}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (User, Product, SwapRequest, DisputeReport):
    event.listen(_model, "before_update", _set_updated_at)
