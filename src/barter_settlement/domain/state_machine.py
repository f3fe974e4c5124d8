"""Swap Lifecycle State Machine Guard.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API, a sweeper or an admin tool does, an illegal
transition (e.g., pending -> completed) raises TransitionNotAllowed.

The machine is instantiated per swap and validates transitions before the
ORM row is touched. The service layer also derives the ``WHERE status IN``
clause of its conditional updates from this table, so the database-level
race guard and the domain guard can never disagree.

Transition table:
    pending             -> accepted            (accept)
    pending             -> cancelled           (reject, expire)
    accepted            -> awaiting_delivery   (setup_delivery)
    accepted            -> cancelled           (cancel, expire)
    accepted            -> cancel_requested    (request_mutual_cancel)
    awaiting_delivery   -> in_delivery         (ship)
    awaiting_delivery   -> partially_delivered (partial_handover)
    awaiting_delivery   -> delivered           (complete_handover)
    awaiting_delivery   -> cancelled           (cancel, expire)
    awaiting_delivery   -> cancel_requested    (request_mutual_cancel)
    in_delivery         -> partially_delivered (partial_handover)
    in_delivery         -> delivered           (complete_handover)
    in_delivery         -> cancelled           (cancel)
    in_delivery         -> cancel_requested    (request_mutual_cancel)
    partially_delivered -> delivered           (complete_handover)
    delivered           -> completed           (confirm, auto_complete)
    delivered           -> disputed            (open_dispute)
    cancel_requested    -> cancelled_mutual    (accept_mutual_cancel)
    cancel_requested    -> <previous status>   (resume_accepted, resume_awaiting_delivery,
                                                resume_in_delivery)
    disputed            -> resolved            (resolve)
    any open post-acceptance status -> completed (force_complete)
"""

from __future__ import annotations

from functools import lru_cache

from statemachine import State, StateMachine

from barter_settlement.domain.enums import SwapStatus


class SwapStateMachine(StateMachine):
    """State machine that guards swap lifecycle transitions.

    Usage:
        sm = SwapStateMachine(current_status="delivered")
        sm.confirm()     # transitions to completed
        sm.status        # "completed"
    """

    # --- States ---
    PENDING = State("pending", value="pending", initial=True)
    ACCEPTED = State("accepted", value="accepted")
    AWAITING_DELIVERY = State("awaiting_delivery", value="awaiting_delivery")
    IN_DELIVERY = State("in_delivery", value="in_delivery")
    PARTIALLY_DELIVERED = State("partially_delivered", value="partially_delivered")
    DELIVERED = State("delivered", value="delivered")
    CANCEL_REQUESTED = State("cancel_requested", value="cancel_requested")
    DISPUTED = State("disputed", value="disputed")
    COMPLETED = State("completed", value="completed", final=True)
    CANCELLED = State("cancelled", value="cancelled", final=True)
    CANCELLED_MUTUAL = State("cancelled_mutual", value="cancelled_mutual", final=True)
    RESOLVED = State("resolved", value="resolved", final=True)

    # --- Events / Transitions ---

    # Offer
    accept = PENDING.to(ACCEPTED)
    reject = PENDING.to(CANCELLED)

    # Delivery
    setup_delivery = ACCEPTED.to(AWAITING_DELIVERY)
    ship = AWAITING_DELIVERY.to(IN_DELIVERY)
    partial_handover = AWAITING_DELIVERY.to(PARTIALLY_DELIVERED) | IN_DELIVERY.to(
        PARTIALLY_DELIVERED
    )
    complete_handover = (
        AWAITING_DELIVERY.to(DELIVERED)
        | IN_DELIVERY.to(DELIVERED)
        | PARTIALLY_DELIVERED.to(DELIVERED)
    )

    # Settlement
    confirm = DELIVERED.to(COMPLETED)
    auto_complete = DELIVERED.to(COMPLETED)
    force_complete = (
        AWAITING_DELIVERY.to(COMPLETED)
        | IN_DELIVERY.to(COMPLETED)
        | PARTIALLY_DELIVERED.to(COMPLETED)
        | DELIVERED.to(COMPLETED)
        | DISPUTED.to(COMPLETED)
    )

    # Unilateral exits
    cancel = (
        ACCEPTED.to(CANCELLED) | AWAITING_DELIVERY.to(CANCELLED) | IN_DELIVERY.to(CANCELLED)
    )
    expire = (
        PENDING.to(CANCELLED) | ACCEPTED.to(CANCELLED) | AWAITING_DELIVERY.to(CANCELLED)
    )

    # Mutual cancellation
    request_mutual_cancel = (
        ACCEPTED.to(CANCEL_REQUESTED)
        | AWAITING_DELIVERY.to(CANCEL_REQUESTED)
        | IN_DELIVERY.to(CANCEL_REQUESTED)
    )
    accept_mutual_cancel = CANCEL_REQUESTED.to(CANCELLED_MUTUAL)
    resume_accepted = CANCEL_REQUESTED.to(ACCEPTED)
    resume_awaiting_delivery = CANCEL_REQUESTED.to(AWAITING_DELIVERY)
    resume_in_delivery = CANCEL_REQUESTED.to(IN_DELIVERY)

    # Disputes
    open_dispute = DELIVERED.to(DISPUTED)
    resolve = DISPUTED.to(RESOLVED)

    def __init__(self, current_status: str = "pending") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current SwapStatus value (e.g., "delivered").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=str(current_status))

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches SwapStatus enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [getattr(event, "id", event.name) for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a state transition and return the new status.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = SwapStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_name not in _event_names() or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


@lru_cache(maxsize=1)
def _event_names() -> frozenset[str]:
    names: set[str] = set()
    for status in SwapStatus:
        names.update(SwapStateMachine(status.value).get_allowed_events())
    return frozenset(names)


@lru_cache(maxsize=None)
def sources_for(event_name: str) -> tuple[SwapStatus, ...]:
    """Statuses from which ``event_name`` may fire, in declaration order."""
    return tuple(
        status
        for status in SwapStatus
        if event_name in SwapStateMachine(status.value).get_allowed_events()
    )


@lru_cache(maxsize=1)
def legal_edges() -> frozenset[tuple[str, str]]:
    """Every (from_status, to_status) pair the table permits."""
    edges: set[tuple[str, str]] = set()
    for status in SwapStatus:
        for event_name in SwapStateMachine(status.value).get_allowed_events():
            edges.add((status.value, validate_transition(status.value, event_name)))
    return frozenset(edges)
