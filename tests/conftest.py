"""Shared test fixtures for the barter settlement test suite.

Provides:
    - A fresh file-backed SQLite database per test (aiosqlite), so sweepers
      can open their own sessions next to the test's session
    - A controllable clock
    - Recording notification/activity sinks
    - Factories for users, products and services
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from barter_settlement.config import Settings
from barter_settlement.domain.collaborators import ActivityEvent
from barter_settlement.domain.enums import NotificationEvent
from barter_settlement.infrastructure.database.orm_models import Base, Product, User
from barter_settlement.infrastructure.database.repositories import (
    ProductRepository,
    UserRepository,
)
from barter_settlement.services.dispute_service import DisputeService
from barter_settlement.services.ledger import ValorLedger
from barter_settlement.services.swap_service import SwapCollaborators, SwapService

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall-clock time plus a manually advanced offset."""

    def __init__(self) -> None:
        self.offset = timedelta(0)

    def __call__(self) -> datetime:
        return datetime.now(UTC) + self.offset

    def advance(self, hours: float = 0, minutes: float = 0) -> None:
        self.offset += timedelta(hours=hours, minutes=minutes)


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[uuid.UUID, NotificationEvent, dict[str, Any]]] = []

    async def notify(
        self, user_id: uuid.UUID, event_type: NotificationEvent, payload: dict[str, Any]
    ) -> None:
        self.sent.append((user_id, event_type, payload))

    def events_for(self, user_id: uuid.UUID) -> list[NotificationEvent]:
        return [event for uid, event, _ in self.sent if uid == user_id]

    def of_type(self, event_type: NotificationEvent) -> list[tuple[uuid.UUID, dict[str, Any]]]:
        return [(uid, payload) for uid, event, payload in self.sent if event == event_type]


class RecordingFeed:
    def __init__(self) -> None:
        self.events: list[ActivityEvent] = []

    async def record(self, event: ActivityEvent) -> None:
        self.events.append(event)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:  # noqa: ANN001
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    await engine.dispose()


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Configuration & collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, cron_secret="", app_env="development")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def feed() -> RecordingFeed:
    return RecordingFeed()


@pytest.fixture
def make_service(
    settings: Settings, clock: FakeClock, sink: RecordingSink, feed: RecordingFeed
) -> Callable[[AsyncSession], SwapService]:
    def _make(session: AsyncSession) -> SwapService:
        return SwapService(
            session, SwapCollaborators.for_session(session, sink, feed), settings, clock
        )

    return _make


@pytest.fixture
def svc(session: AsyncSession, make_service) -> SwapService:  # noqa: ANN001
    return make_service(session)


@pytest.fixture
def disputes(svc: SwapService) -> DisputeService:
    return DisputeService(svc)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session: AsyncSession) -> Callable[..., Awaitable[uuid.UUID]]:
    """Create a user and fund them through the ledger so the journal reconciles."""

    async def _make(
        valor: int = 0, role: str = "user", trust: int = 100, name: str = "user"
    ) -> uuid.UUID:
        user = await UserRepository(session).create(
            User(display_name=name, role=role, trust_score=trust)
        )
        if valor:
            await ValorLedger(session).grant(user.id, valor, "test grant")
        await session.commit()
        return user.id

    return _make


@pytest.fixture
def make_product(session: AsyncSession) -> Callable[..., Awaitable[uuid.UUID]]:
    async def _make(
        owner_id: uuid.UUID, price: int = 800, category: str | None = None, title: str = "Item"
    ) -> uuid.UUID:
        product = await ProductRepository(session).create(
            Product(owner_id=owner_id, title=title, valor_price=price, category=category)
        )
        await session.commit()
        return product.id

    return _make


@pytest.fixture
def balance(session: AsyncSession) -> Callable[[uuid.UUID], Awaitable[User]]:
    """Re-read a user row (balances, trust, suspension)."""

    async def _get(user_id: uuid.UUID) -> User:
        return await UserRepository(session).get_by_id(user_id)

    return _get


@pytest_asyncio.fixture
async def parties(make_user) -> tuple[uuid.UUID, uuid.UUID]:  # noqa: ANN001
    """(owner, requester) with enough Valor for an 800 Valor swap."""
    owner = await make_user(valor=500, trust=90, name="owner")
    requester = await make_user(valor=1500, name="requester")
    return owner, requester


@pytest_asyncio.fixture
async def admin(make_user) -> uuid.UUID:  # noqa: ANN001
    return await make_user(role="admin", name="admin")


# ---------------------------------------------------------------------------
# Lifecycle driver
# ---------------------------------------------------------------------------


class SwapDriver:
    """Walks a swap through the happy path, committing after every step."""

    def __init__(self, svc: SwapService) -> None:
        self.svc = svc

    async def offer(self, requester_id: uuid.UUID, product_id: uuid.UUID, **kwargs: Any):  # noqa: ANN201
        swap = await self.svc.create_offer(requester_id, product_id, **kwargs)
        await self.svc.commit()
        return swap

    async def accept(self, swap):  # noqa: ANN001, ANN201
        await self.svc.accept_offer(swap.id, swap.owner_id)
        await self.svc.commit()
        return swap

    async def arrange(self, swap, method: str = "delivery_point"):  # noqa: ANN001, ANN201
        location = {
            "delivery_point": {"delivery_point_id": "DP-1"},
            "custom_location": {"custom_location": "Moda park entrance"},
            "cargo": {},
        }[method]
        await self.svc.setup_delivery(
            swap.id, swap.owner_id, method, ["packed.jpg"], **location
        )
        await self.svc.commit()
        return swap

    async def hand_over(self, swap):  # noqa: ANN001, ANN201
        await self.svc.redeem_delivery(swap.id, swap.verification_code, swap.requester_id)
        if swap.is_item_for_item:
            await self.svc.redeem_delivery(swap.id, swap.verification_code_b, swap.owner_id)
        await self.svc.commit()
        return swap

    async def delivered(self, requester_id: uuid.UUID, product_id: uuid.UUID, **kwargs: Any):  # noqa: ANN201
        swap = await self.offer(requester_id, product_id, **kwargs)
        await self.accept(swap)
        await self.arrange(swap)
        return await self.hand_over(swap)


@pytest.fixture
def driver(svc: SwapService) -> SwapDriver:
    return SwapDriver(svc)
