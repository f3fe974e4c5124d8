"""Domain exceptions for the swap settlement engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
Every guard raises before any mutation, so a caught SettlementError always
means the unit of work can be rolled back with nothing half-applied.
"""

from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Base exception for all domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "SETTLEMENT_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


# --- Validation Errors ---


class ValidationFailedError(SettlementError):
    """Raised when input is well-formed but violates a business rule."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(
            message=message,
            code="VALIDATION_FAILED",
            details={"field": field} if field else None,
        )


# --- Not Found Errors ---


class SwapNotFoundError(SettlementError):
    def __init__(self, swap_id: str) -> None:
        super().__init__(message=f"Swap not found: {swap_id}", code="SWAP_NOT_FOUND")
        self.swap_id = swap_id


class DisputeNotFoundError(SettlementError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute not found: {dispute_id}", code="DISPUTE_NOT_FOUND"
        )


class UserNotFoundError(SettlementError):
    def __init__(self, user_id: str) -> None:
        super().__init__(message=f"User not found: {user_id}", code="USER_NOT_FOUND")


class ProductNotFoundError(SettlementError):
    def __init__(self, product_id: str) -> None:
        super().__init__(
            message=f"Product not found: {product_id}", code="PRODUCT_NOT_FOUND"
        )


# --- Guard Errors ---


class InvalidStateTransitionError(SettlementError):
    """Raised when an attempted state transition is not allowed.

    Example: pending -> completed (must be accepted and delivered first).
    """

    def __init__(
        self, current_state: str, attempted: str, hint: str | None = None
    ) -> None:
        message = f"Invalid state transition: {current_state} -> {attempted}"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(
            message=message,
            code="INVALID_STATE_TRANSITION",
            details={"current_state": current_state, "attempted": attempted},
        )
        self.current_state = current_state
        self.attempted = attempted


class NotAuthorizedError(SettlementError):
    """Raised when the actor does not hold the role an operation needs."""

    def __init__(self, actor_id: str, action: str) -> None:
        super().__init__(
            message=f"User {actor_id} is not allowed to {action}",
            code="NOT_AUTHORIZED",
        )
        self.actor_id = actor_id


class SelfApprovalError(NotAuthorizedError):
    """Raised when the party who asked for a mutual cancel tries to approve it."""

    def __init__(self, actor_id: str) -> None:
        super().__init__(actor_id, "approve their own cancellation request")
        self.code = "SELF_APPROVAL"


class UserSuspendedError(NotAuthorizedError):
    def __init__(self, actor_id: str) -> None:
        super().__init__(actor_id, "trade while suspended")
        self.code = "USER_SUSPENDED"


class MissingEvidenceError(SettlementError):
    """Raised when photos are missing or exceed the allowed count."""

    def __init__(self, what: str, minimum: int = 1, maximum: int = 5) -> None:
        super().__init__(
            message=f"{what}: between {minimum} and {maximum} photos required",
            code="MISSING_EVIDENCE",
            details={"minimum": minimum, "maximum": maximum},
        )


class DeadlineExpiredError(SettlementError):
    def __init__(self, what: str) -> None:
        super().__init__(message=f"{what} has expired", code="DEADLINE_EXPIRED")


class InvalidVerificationCodeError(SettlementError):
    def __init__(self, swap_id: str, reason: str = "code does not match") -> None:
        super().__init__(
            message=f"Invalid verification code for swap {swap_id}: {reason}",
            code="INVALID_VERIFICATION_CODE",
        )


# --- Conflict Errors ---


class ConflictError(SettlementError):
    """Base for conflicts. ``already_done`` tells callers whether retrying is moot."""

    already_done: bool = False


class AlreadySettledError(ConflictError):
    already_done = True

    def __init__(self, swap_id: str, status: str) -> None:
        super().__init__(
            message=f"Swap {swap_id} is already {status}",
            code="ALREADY_SETTLED",
            details={"status": status, "already_done": True},
        )


class AlreadyDisputedError(ConflictError):
    already_done = True

    def __init__(self, swap_id: str) -> None:
        super().__init__(
            message=f"Swap {swap_id} already has an open dispute",
            code="ALREADY_DISPUTED",
            details={"already_done": True},
        )


class FeedbackExistsError(ConflictError):
    already_done = True

    def __init__(self, swap_id: str, user_id: str) -> None:
        super().__init__(
            message=f"User {user_id} already left feedback on swap {swap_id}",
            code="FEEDBACK_EXISTS",
            details={"already_done": True},
        )


class InsufficientBalanceError(ConflictError):
    def __init__(self, user_id: str, required: int, available: int) -> None:
        super().__init__(
            message=(
                f"Insufficient Valor for user {user_id}: "
                f"required {required}, available {available}"
            ),
            code="INSUFFICIENT_BALANCE",
            details={"required": required, "available": available, "already_done": False},
        )


# --- Integrity Errors (fatal) ---


class IntegrityViolationError(SettlementError):
    """Base for invariant breaches. Never retried, never auto-corrected."""


class EscrowIntegrityError(IntegrityViolationError):
    def __init__(self, swap_id: str, expected: str, found: str) -> None:
        super().__init__(
            message=(
                f"Escrow for swap {swap_id} expected in state {expected}, found {found}"
            ),
            code="ESCROW_INTEGRITY",
            details={"expected": expected, "found": found},
        )


class LedgerIntegrityError(IntegrityViolationError):
    def __init__(self, user_id: str, stored: int, derived: int) -> None:
        super().__init__(
            message=(
                f"Ledger mismatch for user {user_id}: stored balance {stored}, "
                f"journal derives {derived}"
            ),
            code="LEDGER_INTEGRITY",
            details={"stored": stored, "derived": derived},
        )


# --- Throttling ---


class RateLimitExceededError(SettlementError):
    def __init__(self, key: str, retry_after: int) -> None:
        super().__init__(
            message=f"Rate limit exceeded for {key}, retry in {retry_after}s",
            code="RATE_LIMITED",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after
