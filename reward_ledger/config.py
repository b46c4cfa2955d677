"""
Engine configuration.

Loaded from environment variables (prefix ``REWARD_LEDGER_``) or a ``.env``
file using pydantic-settings.
"""

from datetime import timedelta
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ReferralSettings


class LedgerSettings(BaseSettings):
    """Reward ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REWARD_LEDGER_",
        env_file=".env",
        extra="ignore",
    )

    # Accrual clock
    accrual_window_hours: int = Field(default=24, gt=0)
    maturity_days: int = Field(default=30, gt=0)

    # Scheduler
    scheduler_enabled: bool = False
    accrual_interval_seconds: int = Field(default=300, gt=0)

    # Referral commissions
    referral_max_depth: int = Field(default=3, ge=1)
    level1_points: int = 100
    level2_points: int = 50
    level3_points: int = 25
    team_earnings_rates: list[Decimal] = Field(
        default_factory=lambda: [Decimal("0.03"), Decimal("0.02"), Decimal("0.01")]
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def accrual_window(self) -> timedelta:
        return timedelta(hours=self.accrual_window_hours)

    @property
    def maturity(self) -> timedelta:
        return timedelta(days=self.maturity_days)

    def referral_settings(self) -> ReferralSettings:
        return ReferralSettings(
            level1_points=self.level1_points,
            level2_points=self.level2_points,
            level3_points=self.level3_points,
            team_earnings_rates=self.team_earnings_rates,
            max_depth=self.referral_max_depth,
        )


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings()
