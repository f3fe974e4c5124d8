#!/usr/bin/env python3
"""Barter Settlement - End-to-End Simulation.

Simulates four scenarios between an OwnerBot (lists a product) and a
RequesterBot (pays Valor or offers an item):

    Scenario 1: Happy Path
        - Requester offers 800 Valor, owner accepts (deposit locked)
        - Owner hands over at a delivery point, requester redeems the code
        - Requester confirms -> escrow settles to the owner net of the fee

    Scenario 2: Stalled Offer
        - Requester offers, owner never answers
        - 25 simulated hours later the auto-cancel sweep refunds the escrow

    Scenario 3: Item-for-Item
        - Requester offers their own product plus 100 Valor
        - Both handover codes must be redeemed before the swap is delivered
        - The dispute window passes quietly -> auto-complete sweep settles

    Scenario 4: Dispute
        - Delivered item turns out damaged, requester opens a dispute
        - Owner answers with evidence, admin resolves with a refund and
          compensation from platform funds

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite in-memory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 1
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from barter_settlement.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

# Module-level state
_sqlite_engine = None
_sqlite_session_factory = None


class SimClock:
    """A clock the scenarios can fast-forward instead of sleeping."""

    def __init__(self) -> None:
        self._offset = timedelta(0)

    def __call__(self) -> datetime:
        return datetime.now(UTC) + self._offset

    def advance(self, hours: float) -> None:
        self._offset += timedelta(hours=hours)


clock = SimClock()


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False):
    """Initialize database engine and create tables."""
    global _sqlite_engine, _sqlite_session_factory

    if use_sqlite:
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
        from sqlalchemy.pool import StaticPool

        from barter_settlement.infrastructure.database.orm_models import Base

        _sqlite_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            echo=False,
            poolclass=StaticPool,
        )
        _sqlite_session_factory = async_sessionmaker(
            bind=_sqlite_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from barter_settlement.infrastructure.database.engine import init_db

        await init_db()


def session_factory():
    """The sessionmaker the sweepers open their units of work from."""
    if _sqlite_session_factory is not None:
        return _sqlite_session_factory

    from barter_settlement.infrastructure.database.engine import get_session_factory

    return get_session_factory()


async def shutdown_database():
    """Close database connections."""
    global _sqlite_engine, _sqlite_session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _sqlite_session_factory = None
    else:
        from barter_settlement.infrastructure.database.engine import close_db

        await close_db()


def swap_service(session: Any):
    from barter_settlement.services.swap_service import SwapService

    return SwapService(session, clock=clock)


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------
async def create_user(name: str, valor: int, role: str = "user") -> uuid.UUID:
    from barter_settlement.infrastructure.database.orm_models import User
    from barter_settlement.infrastructure.database.repositories import UserRepository

    async with session_factory()() as session:
        svc = swap_service(session)
        user = await UserRepository(session).create(User(display_name=name, role=role))
        if valor:
            await svc.ledger.grant(user.id, valor, "Welcome grant")
        await svc.commit()
        logger.info("👤 User created", name=name, valor=valor, role=role)
        return user.id


async def create_product(
    owner_id: uuid.UUID, title: str, price: int, category: str | None = None
) -> uuid.UUID:
    from barter_settlement.infrastructure.database.orm_models import Product
    from barter_settlement.infrastructure.database.repositories import ProductRepository

    async with session_factory()() as session:
        product = await ProductRepository(session).create(
            Product(owner_id=owner_id, title=title, valor_price=price, category=category)
        )
        await session.commit()
        return product.id


# ---------------------------------------------------------------------------
# Marketplace bots
# ---------------------------------------------------------------------------
@dataclass
class OwnerBot:
    """Simulated owner who lists a product and runs the handover."""

    user_id: uuid.UUID
    inbox: dict[uuid.UUID, str] = field(default_factory=dict)

    async def accept(self, swap_id: uuid.UUID) -> None:
        async with session_factory()() as session:
            svc = swap_service(session)
            swap = await svc.accept_offer(swap_id, self.user_id)
            await svc.commit()
        logger.info(
            "🟢 OWNER: Offer accepted",
            swap_id=str(swap_id),
            risk_tier=swap.risk_tier,
            deposit=swap.owner_deposit,
        )

    async def hand_over(self, swap_id: uuid.UUID) -> tuple[str, str | None]:
        """Arrange a delivery-point handover. Returns (code A, code B)."""
        async with session_factory()() as session:
            svc = swap_service(session)
            swap = await svc.setup_delivery(
                swap_id,
                self.user_id,
                method="delivery_point",
                packaging_photos=["photos/packed-front.jpg", "photos/packed-side.jpg"],
                delivery_point_id="DP-KADIKOY-01",
            )
            await svc.commit()
        logger.info("🟢 OWNER: Item dropped off", swap_id=str(swap_id), code=swap.delivery_code)
        return swap.verification_code, swap.verification_code_b

    async def redeem(self, swap_id: uuid.UUID, code: str) -> str:
        async with session_factory()() as session:
            svc = swap_service(session)
            swap = await svc.redeem_delivery(swap_id, code, actor_id=self.user_id)
            await svc.commit()
        logger.info("🟢 OWNER: Picked up the offered item", status=swap.status)
        return swap.status

    async def answer_dispute(self, dispute_id: uuid.UUID) -> None:
        from barter_settlement.services.dispute_service import DisputeService

        async with session_factory()() as session:
            disputes = DisputeService(swap_service(session))
            await disputes.submit_dispute_evidence(
                dispute_id,
                self.user_id,
                ["photos/before-shipping.jpg"],
                note="It left my hands intact.",
            )
            await disputes.commit()
        logger.info("🟢 OWNER: Counter-evidence submitted", dispute_id=str(dispute_id))


@dataclass
class RequesterBot:
    """Simulated requester who pays in Valor and/or an item."""

    user_id: uuid.UUID

    async def offer(
        self,
        product_id: uuid.UUID,
        valor_amount: int | None = None,
        offered_product_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        async with session_factory()() as session:
            svc = swap_service(session)
            swap = await svc.create_offer(
                self.user_id,
                product_id,
                valor_amount=valor_amount,
                offered_product_id=offered_product_id,
            )
            await svc.commit()
        logger.info(
            "🔵 REQUESTER: Offer sent",
            swap_id=str(swap.id),
            valor=swap.pending_valor_amount,
            item_for_item=swap.is_item_for_item,
        )
        return swap.id

    async def redeem(self, swap_id: uuid.UUID, code: str) -> str:
        async with session_factory()() as session:
            svc = swap_service(session)
            swap = await svc.redeem_delivery(
                swap_id, code, actor_id=self.user_id, receiving_photos=["photos/received.jpg"]
            )
            await svc.commit()
        logger.info("🔵 REQUESTER: Code redeemed", swap_id=str(swap_id), status=swap.status)
        return swap.status

    async def confirm(self, swap_id: uuid.UUID) -> dict:
        async with session_factory()() as session:
            svc = swap_service(session)
            result = await svc.confirm_settlement(swap_id, self.user_id)
            await svc.commit()
        fee = result.fee.to_dict() if result.fee else {}
        logger.info(
            "🔵 REQUESTER: Receipt confirmed",
            swap_id=str(swap_id),
            fee=fee.get("total", 0),
            owner_receives=fee.get("net_amount", 0),
        )
        return fee

    async def dispute(self, swap_id: uuid.UUID) -> uuid.UUID:
        from barter_settlement.services.dispute_service import DisputeService

        async with session_factory()() as session:
            disputes = DisputeService(swap_service(session))
            dispute = await disputes.open_dispute(
                swap_id,
                self.user_id,
                "damaged",
                "Screen arrived cracked across the top corner.",
                ["photos/crack-1.jpg", "photos/crack-2.jpg"],
            )
            await disputes.commit()
        logger.info("🔵 REQUESTER: Dispute opened", dispute_id=str(dispute.id))
        return dispute.id


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_balances(**users: uuid.UUID) -> None:
    from barter_settlement.infrastructure.database.repositories import UserRepository

    async with session_factory()() as session:
        repo = UserRepository(session)
        print("  💰 Balances:")
        for label, user_id in users.items():
            user = await repo.get_by_id(user_id)
            print(
                f"    {label:<10} spendable={user.valor_balance:<6} "
                f"locked={user.locked_valor:<5} trust={user.trust_score}"
            )


async def print_audit_trail(swap_id: uuid.UUID) -> None:
    """Print the full audit trail for a swap."""
    async with session_factory()() as session:
        logs = await swap_service(session).get_logs(swap_id)
    print("\n  📜 Audit Trail:")
    for i, entry in enumerate(logs, 1):
        old = entry.from_status or "-"
        reason = f" [{entry.reason}]" if entry.reason else ""
        print(f"    {i}. {old} → {entry.to_status} (by {entry.changed_by}){reason}")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path - Valor for a Phone")

    owner = OwnerBot(await create_user("Ayse", valor=500))
    requester = RequesterBot(await create_user("Mehmet", valor=1500))
    phone = await create_product(owner.user_id, "Used phone", 800, "Telefon")

    section("Step 1: Requester offers, owner accepts")
    swap_id = await requester.offer(phone)
    await owner.accept(swap_id)
    await print_balances(owner=owner.user_id, requester=requester.user_id)

    section("Step 2: Handover at a delivery point")
    code, _ = await owner.hand_over(swap_id)
    await requester.redeem(swap_id, code)

    section("Step 3: Requester confirms, escrow settles")
    fee = await requester.confirm(swap_id)
    print(f"  ✅ Fee {fee['total']} (effective {fee['effective_rate']}), owner nets {fee['net_amount']}")
    await print_balances(owner=owner.user_id, requester=requester.user_id)
    await print_audit_trail(swap_id)


# ===========================================================================
# Scenario 2: Stalled Offer
# ===========================================================================
async def scenario_2_stalled_offer() -> None:
    banner("SCENARIO 2: Stalled Offer - Auto-Cancel Refund")
    from barter_settlement.services.automation import AutoCancelSweeper

    owner = OwnerBot(await create_user("Zeynep", valor=0))
    requester = RequesterBot(await create_user("Can", valor=300))
    lamp = await create_product(owner.user_id, "Desk lamp", 120)

    section("Step 1: Offer sent, nobody answers")
    swap_id = await requester.offer(lamp)
    await print_balances(requester=requester.user_id)

    sweeper = AutoCancelSweeper(session_factory(), clock=clock)

    section("Step 2: 19 hours later - reminder window")
    clock.advance(19)
    result = await sweeper.run()
    print(f"  🔔 Reminders sent: {result.reminders_sent}, cancelled: {result.cancelled}")

    section("Step 3: 25 hours in - sweep reclaims the escrow")
    clock.advance(6)
    result = await sweeper.run()
    print(f"  🧹 Cancelled: {result.cancelled}, refunded: {result.total_refunded} Valor")
    await print_balances(requester=requester.user_id)
    await print_audit_trail(swap_id)


# ===========================================================================
# Scenario 3: Item-for-Item
# ===========================================================================
async def scenario_3_item_for_item() -> None:
    banner("SCENARIO 3: Item-for-Item - Two Handovers, Auto-Complete")
    from barter_settlement.services.automation import AutoCompleteSweeper

    owner = OwnerBot(await create_user("Elif", valor=100))
    requester = RequesterBot(await create_user("Burak", valor=400))
    bike = await create_product(owner.user_id, "City bike", 90, "Spor")
    skates = await create_product(requester.user_id, "Inline skates", 60, "Spor")

    section("Step 1: Skates + 50 Valor for the bike")
    swap_id = await requester.offer(bike, valor_amount=50, offered_product_id=skates)
    await owner.accept(swap_id)
    code_a, code_b = await owner.hand_over(swap_id)

    section("Step 2: First handover only")
    status = await requester.redeem(swap_id, code_a)
    print(f"  ⏳ Status after one leg: {status}")

    section("Step 3: Second handover")
    status = await owner.redeem(swap_id, code_b)
    print(f"  📦 Status after both legs: {status}")

    section("Step 4: 49 hours pass without a dispute")
    clock.advance(49)
    result = await AutoCompleteSweeper(session_factory(), clock=clock).run()
    print(f"  🤖 Auto-completed: {result.completed}, skipped: {result.skipped}")
    await print_balances(owner=owner.user_id, requester=requester.user_id)
    await print_audit_trail(swap_id)


# ===========================================================================
# Scenario 4: Dispute
# ===========================================================================
async def scenario_4_dispute() -> None:
    banner("SCENARIO 4: Dispute - Damaged on Arrival")
    from barter_settlement.services.dispute_service import DisputeService

    owner = OwnerBot(await create_user("Deniz", valor=200))
    requester = RequesterBot(await create_user("Emre", valor=1000))
    admin_id = await create_user("Support", valor=0, role="admin")
    tablet = await create_product(owner.user_id, "Tablet", 450, "Elektronik")

    section("Step 1: Swap runs to delivery")
    swap_id = await requester.offer(tablet)
    await owner.accept(swap_id)
    code, _ = await owner.hand_over(swap_id)
    await requester.redeem(swap_id, code)

    section("Step 2: Requester disputes, owner answers")
    clock.advance(5)
    dispute_id = await requester.dispute(swap_id)
    await owner.answer_dispute(dispute_id)

    section("Step 3: Admin upholds the complaint")
    async with session_factory()() as session:
        disputes = DisputeService(swap_service(session))
        result = await disputes.resolve_dispute(
            dispute_id,
            admin_id,
            status="resolved",
            note="Damage confirmed from photos.",
            compensation_amount=25,
        )
        await disputes.commit()
    print(f"  ⚖️  Swap {result.swap.status}, escrow {result.swap.escrow_state}")
    await print_balances(owner=owner.user_id, requester=requester.user_id)
    await print_audit_trail(swap_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_stalled_offer,
    3: scenario_3_item_for_item,
    4: scenario_4_dispute,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🔁" * 35)
        print("  BARTER SETTLEMENT ENGINE - SIMULATION")
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("🔁" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Barter Settlement Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
