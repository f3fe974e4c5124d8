"""Database infrastructure - engine, ORM models, and repositories."""

from barter_settlement.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from barter_settlement.infrastructure.database.orm_models import (
    Base,
    DisputeReport,
    Product,
    SwapRequest,
    SwapStatusLog,
    SystemStats,
    User,
    ValorTransaction,
)
from barter_settlement.infrastructure.database.repositories import (
    DisputeRepository,
    StatusLogRepository,
    SwapRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "DisputeReport",
    "Product",
    "SwapRequest",
    "SwapStatusLog",
    "SystemStats",
    "User",
    "ValorTransaction",
    "DisputeRepository",
    "StatusLogRepository",
    "SwapRepository",
    "TransactionRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
