"""Domain enumerations for the swap settlement engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class SwapStatus(enum.StrEnum):
    """Lifecycle states of a swap request.

    State transitions are enforced by the SwapStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    AWAITING_DELIVERY = "awaiting_delivery"
    IN_DELIVERY = "in_delivery"
    PARTIALLY_DELIVERED = "partially_delivered"
    DELIVERED = "delivered"
    CANCEL_REQUESTED = "cancel_requested"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CANCELLED_MUTUAL = "cancelled_mutual"
    RESOLVED = "resolved"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SwapStatus.COMPLETED,
        SwapStatus.CANCELLED,
        SwapStatus.CANCELLED_MUTUAL,
        SwapStatus.RESOLVED,
    }
)

# Statuses the auto-cancel sweep treats as stalled once idle long enough.
STALLABLE_STATUSES = (
    SwapStatus.PENDING,
    SwapStatus.ACCEPTED,
    SwapStatus.AWAITING_DELIVERY,
)


class EscrowState(enum.StrEnum):
    """Whether the Valor leg of a swap is still held, and where it went."""

    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class TransactionType(enum.StrEnum):
    """Types of entries in the append-only valor_transactions journal."""

    GRANT = "grant"
    ESCROW_HOLD = "escrow_hold"
    SWAP_COMPLETED = "swap_completed"
    AUTO_COMPLETE_RELEASE = "auto_complete_release"
    ESCROW_REFUND = "escrow_refund"
    DEPOSIT_LOCK = "deposit_lock"
    DEPOSIT_RELEASE = "deposit_release"
    COMPENSATION = "compensation"


class RiskTier(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DeliveryMethod(enum.StrEnum):
    DELIVERY_POINT = "delivery_point"
    CUSTOM_LOCATION = "custom_location"
    CARGO = "cargo"


class ProductStatus(enum.StrEnum):
    ACTIVE = "active"
    RESERVED = "reserved"
    SWAPPED = "swapped"


class UserRole(enum.StrEnum):
    USER = "user"
    ADMIN = "admin"


class CancelReason(enum.StrEnum):
    """Reason codes a party may give when walking away from a swap."""

    CHANGED_MIND = "changed_mind"
    FOUND_BETTER_DEAL = "found_better_deal"
    ITEM_UNAVAILABLE = "item_unavailable"
    PERSONAL_REASONS = "personal_reasons"
    COMMUNICATION_ISSUES = "communication_issues"
    SCHEDULE_CONFLICT = "schedule_conflict"
    OTHER = "other"


class DisputeType(enum.StrEnum):
    NOT_AS_DESCRIBED = "not_as_described"
    DAMAGED = "damaged"
    MISSING_PARTS = "missing_parts"
    NOT_RECEIVED = "not_received"
    COUNTERFEIT = "counterfeit"
    OTHER = "other"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    RESOLVED = "resolved"
    REJECTED = "rejected"

    @property
    def is_closed(self) -> bool:
        return self in (DisputeStatus.RESOLVED, DisputeStatus.REJECTED)


class SettlementOutcome(enum.StrEnum):
    """Where the escrow goes when a swap terminates."""

    SETTLE = "settle"
    REFUND = "refund"


class NotificationEvent(enum.StrEnum):
    """Event types handed to the NotificationSink after commit."""

    SWAP_OFFER = "swap_offer"
    SWAP_ACCEPTED = "swap_accepted"
    SWAP_REJECTED = "swap_rejected"
    DELIVERY_READY = "delivery_ready"
    ITEM_SHIPPED = "item_shipped"
    SWAP_DELIVERED = "swap_delivered"
    SWAP_COMPLETED = "swap_completed"
    SWAP_CANCELLED = "swap_cancelled"
    SWAP_EXPIRED = "swap_expired"
    SWAP_REMINDER = "swap_reminder"
    MUTUAL_CANCEL_REQUESTED = "mutual_cancel_requested"
    MUTUAL_CANCEL_ACCEPTED = "mutual_cancel_accepted"
    MUTUAL_CANCEL_REJECTED = "mutual_cancel_rejected"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_EVIDENCE = "dispute_evidence"
    DISPUTE_RESOLVED = "dispute_resolved"
    PRICE_PROPOSED = "price_proposed"
    PRICE_AGREED = "price_agreed"
    NEGOTIATION_REJECTED = "negotiation_rejected"
    FEEDBACK_RECEIVED = "feedback_received"


class NegotiationAction(enum.StrEnum):
    """Price negotiation moves on a pending offer."""

    PROPOSE = "propose"
    COUNTER = "counter"
    ACCEPT = "accept"
    REJECT = "reject"


class NegotiationStatus(enum.StrEnum):
    PROPOSED = "proposed"
    AGREED = "agreed"
    REJECTED = "rejected"
