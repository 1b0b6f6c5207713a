"""Ledger settings loaded from the environment (prefix ``SUNLEDGER_``)."""
import logging
from datetime import timedelta, timezone, tzinfo
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Limits, charges and runtime knobs for the ledger."""

    app_name: str = Field(default="sunledger", description="Application name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Deposits
    min_deposit: Decimal = Field(default=Decimal("100"), ge=0)
    max_deposit: Decimal = Field(default=Decimal("50000"), ge=0)

    # Withdrawals
    min_withdrawal: Decimal = Field(default=Decimal("500"), ge=0)
    max_withdrawal: Decimal = Field(default=Decimal("50000"), ge=0)
    daily_withdrawal_limit: Decimal = Field(default=Decimal("100000"), ge=0)
    withdrawal_charge_percent: Decimal = Field(default=Decimal("2"), ge=0, le=100)

    # Asia/Dhaka, no DST
    local_utc_offset_hours: float = Field(
        default=6.0, description="Offset used to find local midnight for daily limits"
    )

    # Transaction references
    reference_prefix: str = Field(default="TXN")
    reference_max_attempts: int = Field(default=5, ge=1)

    # Accrual
    accrual_max_workers: int = Field(default=4, ge=1, description="1 runs accrual sequentially")

    model_config = SettingsConfigDict(
        env_prefix="SUNLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_ranges(self) -> "Settings":
        if self.min_deposit > self.max_deposit:
            raise ValueError("min_deposit cannot exceed max_deposit")
        if self.min_withdrawal > self.max_withdrawal:
            raise ValueError("min_withdrawal cannot exceed max_withdrawal")
        return self

    @property
    def local_timezone(self) -> tzinfo:
        return timezone(timedelta(hours=self.local_utc_offset_hours))


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
