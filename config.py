"""Runtime settings for the reward ledger service."""

from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fee_engine import FeeSchedule


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field(default="Stock Reward Ledger")

    database_dsn: str = Field(
        default="dbname=rewards user=rewards password=secret host=localhost port=5432",
        description="libpq connection string used by psycopg.",
    )
    storage_backend: Literal["postgres", "memory"] = Field(default="postgres")

    brokerage_fee_bps: Decimal = Field(default=Decimal("5"), ge=0)
    transaction_tax_bps: Decimal = Field(default=Decimal("25"), ge=0)
    exchange_fee_bps: Decimal = Field(default=Decimal("3"), ge=0)
    regulatory_fee_bps: Decimal = Field(default=Decimal("1"), ge=0)
    tax_on_brokerage_pct: Decimal = Field(default=Decimal("18"), ge=0)

    price_refresh_enabled: bool = Field(default=True)
    price_refresh_minutes: float = Field(default=60, gt=0)
    price_fallback: Literal["none", "mock"] = Field(
        default="none",
        description="What to do when no price snapshot exists for a symbol.",
    )

    timezone: str = Field(default="Asia/Kolkata")

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    def fee_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            brokerage_bps=self.brokerage_fee_bps,
            transaction_tax_bps=self.transaction_tax_bps,
            exchange_fee_bps=self.exchange_fee_bps,
            regulatory_fee_bps=self.regulatory_fee_bps,
            tax_on_brokerage_pct=self.tax_on_brokerage_pct,
        )

    def dict_for_logging(self) -> Dict[str, Any]:
        """settings without the database password."""
        data = self.model_dump()
        data["database_dsn"] = _mask_password(self.database_dsn)
        return data


def _mask_password(dsn: str) -> str:
    parts = []
    for part in dsn.split():
        if part.startswith("password="):
            part = "password=***"
        parts.append(part)
    return " ".join(parts)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
