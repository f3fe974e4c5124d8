"""Feedback Service - fairness ratings after a completed swap.

Each party may rate the counterparty once per swap. A rating that calls
the swap unfair (or scores it low) costs the counterparty trust through
the same ``adjust_trust`` path settlements and cancellations use, so the
suspension threshold applies here too.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from barter_settlement.domain.enums import NotificationEvent, SwapStatus
from barter_settlement.domain.exceptions import (
    FeedbackExistsError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    ValidationFailedError,
)
from barter_settlement.domain.trust import TrustEvent
from barter_settlement.infrastructure.database.orm_models import SwapFeedback
from barter_settlement.infrastructure.database.repositories import FeedbackRepository
from barter_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from barter_settlement.services.outbox import Outbox
    from barter_settlement.services.swap_service import SwapService

logger = get_logger(__name__)

SCORE_RANGE = range(1, 6)
# Below these a rating counts as unfair even when is_fair is set.
MIN_FAIR_SCORE = 3
MIN_ACCURATE_PRICE = 2


def is_unfair(is_fair: bool, fairness_score: int, price_accuracy: int) -> bool:
    return not is_fair or fairness_score < MIN_FAIR_SCORE or price_accuracy < MIN_ACCURATE_PRICE


class FeedbackService:
    def __init__(self, swaps: SwapService) -> None:
        self._swaps = swaps
        self._feedback = FeedbackRepository(swaps.session)

    @property
    def outbox(self) -> Outbox:
        return self._swaps.outbox

    async def commit(self) -> None:
        await self._swaps.commit()

    async def leave_feedback(
        self,
        swap_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        is_fair: bool = True,
        fairness_score: int = 3,
        price_accuracy: int = 3,
        comment: str | None = None,
    ) -> SwapFeedback:
        """Rate the counterparty of a completed swap. One rating per party."""
        swap = await self._swaps.get_swap(swap_id)
        if actor_id not in (swap.owner_id, swap.requester_id):
            raise NotAuthorizedError(str(actor_id), "rate this swap")
        if swap.status != SwapStatus.COMPLETED.value:
            raise InvalidStateTransitionError(
                swap.status, "feedback", "only completed swaps can be rated"
            )
        if fairness_score not in SCORE_RANGE:
            raise ValidationFailedError("Fairness score must be between 1 and 5", "fairness_score")
        if price_accuracy not in SCORE_RANGE:
            raise ValidationFailedError("Price accuracy must be between 1 and 5", "price_accuracy")
        if await self._feedback.get_by_swap_and_user(swap.id, actor_id) is not None:
            raise FeedbackExistsError(str(swap.id), str(actor_id))

        target_id = swap.counterparty_of(actor_id)
        penalized = is_unfair(is_fair, fairness_score, price_accuracy)
        try:
            feedback = await self._feedback.create(
                SwapFeedback(
                    swap_request_id=swap.id,
                    user_id=actor_id,
                    target_user_id=target_id,
                    is_fair=is_fair,
                    fairness_score=fairness_score,
                    price_accuracy=price_accuracy,
                    comment=comment,
                    penalized=penalized,
                    created_at=self._swaps.now(),
                )
            )
        except IntegrityError as err:
            raise FeedbackExistsError(str(swap.id), str(actor_id)) from err

        trust_score = None
        if penalized:
            trust_score = await self._swaps.adjust_trust(target_id, TrustEvent.UNFAIR_FEEDBACK)

        self.outbox.notify(
            target_id,
            NotificationEvent.FEEDBACK_RECEIVED,
            swap_id=str(swap.id),
            is_fair=is_fair,
            fairness_score=fairness_score,
        )
        logger.info(
            "feedback.recorded",
            swap_id=str(swap.id),
            author_id=str(actor_id),
            target_id=str(target_id),
            penalized=penalized,
            trust_score=trust_score,
        )
        return feedback

    async def get_feedback(self, swap_id: uuid.UUID) -> list[SwapFeedback]:
        await self._swaps.get_swap(swap_id)
        return await self._feedback.list_by_swap(swap_id)
