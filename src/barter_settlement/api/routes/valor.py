"""Valor REST API routes: fee preview and balances.

Both endpoints are public-facing lookups, so they go through the Redis
rate limiter when one is connected.

Routes:
    GET    /api/v1/valor/fee-preview?amount=  - Progressive fee for an amount
    GET    /api/v1/valor/{user_id}            - Balance, locked deposit, trust
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from barter_settlement.api.deps import (
    enforce_rate_limit,
    get_app_settings,
    get_db_session,
)
from barter_settlement.config import Settings
from barter_settlement.domain.exceptions import UserNotFoundError
from barter_settlement.domain.fees import brackets_from_pairs, calculate_progressive_fee
from barter_settlement.infrastructure.database.repositories import UserRepository
from barter_settlement.schemas.swap import FeePreviewResponse, ValorBalanceResponse

router = APIRouter(
    prefix="/api/v1/valor",
    tags=["Valor"],
    dependencies=[Depends(enforce_rate_limit)],
)


@router.get("/fee-preview", response_model=FeePreviewResponse, summary="Preview the fee")
async def fee_preview(
    amount: int = Query(..., ge=0, le=10_000_000),
    settings: Settings = Depends(get_app_settings),
) -> FeePreviewResponse:
    """What the owner would receive if a swap of ``amount`` settled now."""
    breakdown = calculate_progressive_fee(
        amount, brackets_from_pairs(settings.fee_brackets), settings.minimum_fee
    )
    rendered = breakdown.to_dict()
    return FeePreviewResponse(
        amount=breakdown.amount,
        fee=breakdown.total,
        net_amount=breakdown.net_amount,
        effective_rate=rendered["effective_rate"],
        components=rendered["brackets"],
    )


@router.get("/{user_id}", response_model=ValorBalanceResponse, summary="Get a user's Valor")
async def get_balance(
    user_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> ValorBalanceResponse:
    user = await UserRepository(session).get_by_id(user_id)
    if user is None:
        raise UserNotFoundError(str(user_id))
    return ValorBalanceResponse(
        user_id=user.id,
        valor_balance=user.valor_balance,
        locked_valor=user.locked_valor,
        trust_score=user.trust_score,
        is_suspended=user.is_suspended,
    )
