"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed fee table or deadline fails fast with a clear
error message instead of at the first settlement.

Usage:
    from barter_settlement.config import get_settings
    settings = get_settings()
    print(settings.dispute_window_hours)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the swap settlement engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://barter:barter_dev"
        "@localhost:5432/barter_settlement"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60
    activity_feed_max_length: int = 1000

    # --- Swap Timing (hours) ---
    dispute_window_hours: int = 48
    delivery_confirm_hours: int = 24
    evidence_window_hours: int = 48
    auto_cancel_hours: int = 24
    reminder_window_start_hours: int = 18
    reminder_window_end_hours: int = 20

    # --- Economics ---
    # Upper bound of each bracket in Valor (None = unbounded) and its marginal rate.
    fee_brackets: list[tuple[int | None, Decimal]] = [
        (200, Decimal("0.005")),
        (500, Decimal("0.01")),
        (1000, Decimal("0.015")),
        (2500, Decimal("0.02")),
        (5000, Decimal("0.025")),
        (None, Decimal("0.03")),
    ]
    minimum_fee: int = 1
    owner_deposit_rate: Decimal = Decimal("0.10")
    community_pool_share: Decimal = Decimal("0.5")
    risk_low_max: int = 100
    risk_medium_max: int = 500
    category_risk_multipliers: dict[str, Decimal] = {
        "Elektronik": Decimal("1.5"),
        "Bilgisayar": Decimal("1.5"),
        "Telefon": Decimal("1.5"),
        "Oyun Konsolu": Decimal("1.3"),
        "Mücevher": Decimal("2.0"),
        "Saat": Decimal("1.5"),
        "Antika": Decimal("2.0"),
        "Sanat": Decimal("2.0"),
    }

    # --- Trust Score ---
    trust_completed_swap: int = 2
    trust_cancelled_by_user: int = -3
    trust_dispute_lost: int = -10
    trust_unfair_feedback: int = -2
    trust_suspension_threshold: int = 30

    # --- Negotiation ---
    max_counter_offers: int = 3

    # --- Automation ---
    auto_complete_high_risk: bool = False
    sweep_batch_size: int = 100
    cron_secret: str = ""

    @field_validator("fee_brackets")
    @classmethod
    def _brackets_ascending(
        cls, value: list[tuple[int | None, Decimal]]
    ) -> list[tuple[int | None, Decimal]]:
        """Bounds must strictly increase and only the last bracket may be open."""
        if not value:
            raise ValueError("fee_brackets must not be empty")
        previous = 0
        for index, (upper, _rate) in enumerate(value):
            if upper is None:
                if index != len(value) - 1:
                    raise ValueError("only the last fee bracket may be unbounded")
                continue
            if upper <= previous:
                raise ValueError("fee bracket bounds must be strictly ascending")
            previous = upper
        return value

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
