"""Collaborator Protocols.

Defines the narrow interfaces the settlement engine needs from the rest of
the marketplace: the product catalog, the user directory, a notification
sink and the activity feed. These are Protocols (structural subtyping) so
concrete adapters don't need to inherit from a base class, they just need
to match the shape.

Catalog and directory calls happen INSIDE the settlement transaction.
Notification and activity calls happen only AFTER commit and must never
be able to roll a settlement back.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from barter_settlement.domain.enums import NotificationEvent, ProductStatus


@dataclass(frozen=True)
class Notification:
    """A message queued for a user, dispatched after commit.

    Attributes:
        user_id: Recipient.
        event_type: What happened.
        payload: Event-specific fields (swap id, amounts, hours remaining...).
    """

    user_id: uuid.UUID
    event_type: NotificationEvent
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActivityEvent:
    """A public feed entry (e.g., a completed swap), dispatched after commit."""

    kind: str
    swap_id: uuid.UUID | None
    actor_ids: tuple[uuid.UUID, ...]
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "swap_id": str(self.swap_id) if self.swap_id else None,
            "actor_ids": [str(a) for a in self.actor_ids],
            "data": self.data,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass(frozen=True)
class ProductInfo:
    id: uuid.UUID
    owner_id: uuid.UUID
    valor_price: int
    category: str | None
    status: ProductStatus


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(
        self, user_id: uuid.UUID, event_type: NotificationEvent, payload: dict[str, Any]
    ) -> None: ...


@runtime_checkable
class ActivityFeed(Protocol):
    async def record(self, event: ActivityEvent) -> None: ...


@runtime_checkable
class ProductCatalog(Protocol):
    """Product lookups and status flips, bound to the caller's transaction."""

    async def get_product(self, product_id: uuid.UUID) -> ProductInfo: ...

    async def set_status(self, product_id: uuid.UUID, status: ProductStatus) -> None: ...


@runtime_checkable
class UserDirectory(Protocol):
    """Trust and role lookups, bound to the caller's transaction.

    ``set_trust_score`` stores an absolute value; callers compute it with
    domain.trust.apply_trust_delta from a score read via ``get_trust_score``
    with ``for_update=True``.
    """

    async def get_trust_score(self, user_id: uuid.UUID, *, for_update: bool = False) -> int: ...

    async def set_trust_score(self, user_id: uuid.UUID, score: int) -> None: ...

    async def is_suspended(self, user_id: uuid.UUID) -> bool: ...

    async def is_admin(self, user_id: uuid.UUID) -> bool: ...

    async def suspend(self, user_id: uuid.UUID) -> None: ...
