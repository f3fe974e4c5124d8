"""SQL-backed ProductCatalog and UserDirectory.

Both are bound to the caller's session, so product status flips and trust
updates commit or roll back together with the settlement that caused them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from barter_settlement.domain.collaborators import ProductInfo
from barter_settlement.domain.enums import ProductStatus, UserRole
from barter_settlement.domain.exceptions import ProductNotFoundError, UserNotFoundError
from barter_settlement.domain.trust import clamp_trust
from barter_settlement.infrastructure.database.repositories import (
    ProductRepository,
    UserRepository,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession


class SqlProductCatalog:
    def __init__(self, session: AsyncSession) -> None:
        self._repo = ProductRepository(session)

    async def get_product(self, product_id: uuid.UUID) -> ProductInfo:
        product = await self._repo.get_by_id(product_id)
        if product is None:
            raise ProductNotFoundError(str(product_id))
        return ProductInfo(
            id=product.id,
            owner_id=product.owner_id,
            valor_price=product.valor_price,
            category=product.category,
            status=ProductStatus(product.status),
        )

    async def set_status(self, product_id: uuid.UUID, status: ProductStatus) -> None:
        if not await self._repo.set_status(product_id, status.value):
            raise ProductNotFoundError(str(product_id))


class SqlUserDirectory:
    def __init__(self, session: AsyncSession) -> None:
        self._repo = UserRepository(session)

    async def _get(self, user_id: uuid.UUID, *, for_update: bool = False):  # noqa: ANN202
        user = await self._repo.get_by_id(user_id, for_update=for_update)
        if user is None:
            raise UserNotFoundError(str(user_id))
        return user

    async def get_trust_score(self, user_id: uuid.UUID, *, for_update: bool = False) -> int:
        return (await self._get(user_id, for_update=for_update)).trust_score

    async def set_trust_score(self, user_id: uuid.UUID, score: int) -> None:
        await self._repo.set_trust_score(user_id, clamp_trust(score))

    async def is_suspended(self, user_id: uuid.UUID) -> bool:
        return (await self._get(user_id)).is_suspended

    async def is_admin(self, user_id: uuid.UUID) -> bool:
        return (await self._get(user_id)).role == UserRole.ADMIN.value

    async def suspend(self, user_id: uuid.UUID) -> None:
        if not await self._repo.set_suspended(user_id, True):
            raise UserNotFoundError(str(user_id))
