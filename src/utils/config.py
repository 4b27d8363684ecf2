"""
Configuration management using pydantic-settings.

Loads settings from environment variables (prefix ``CLAIMS_``) and .env files.
Fraud thresholds, tax policy and refresh timings are product policy and are
kept here rather than hard-coded in the engine.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLAIMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Tax policy
    tax_rate: Decimal = Field(
        default=Decimal("0.15"),
        description="VAT rate used to derive a claim's tax amount",
    )
    tax_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        description="Rounding tolerance before a stored tax amount counts as inconsistent",
    )

    # Fraud heuristic
    high_risk_threshold: int = Field(
        default=70,
        ge=0,
        le=100,
        description="Risk score at or above which a claim is flagged",
    )
    duplicate_window_hours: int = Field(default=48, description="Window for duplicate detection")
    duplicate_amount_tolerance: Decimal = Field(default=Decimal("0.01"))
    high_amount_multiplier: Decimal = Field(
        default=Decimal("2"),
        description="A claim above this multiple of its category mean is a high amount",
    )
    duplicate_weight: int = Field(default=40)
    high_amount_weight: int = Field(default=25)
    weekend_weight: int = Field(default=10)
    tax_weight: int = Field(default=15)

    # Refresh / upstream timing
    fetch_timeout_seconds: float = Field(
        default=5.0,
        description="Bound on view refresh fetches before falling back to stale data",
    )
    submit_timeout_seconds: float = Field(
        default=10.0,
        description="Bound on persistence writes before reporting a retryable failure",
    )
    rebroadcast_delays: tuple[float, ...] = Field(
        default=(0.3, 0.8),
        description="Delays (seconds) of the data-sync re-broadcasts after a submission",
    )

    # Budgets
    budget_warning_ratio: Decimal = Field(default=Decimal("0.8"))
    department_budgets: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "Operations": Decimal("900000"),
            "Sales": Decimal("600000"),
            "Finance": Decimal("350000"),
            "Human Resources": Decimal("250000"),
            "IT": Decimal("400000"),
        },
        description="Annual allocation per department",
    )
    default_department_budget: Decimal = Field(default=Decimal("500000"))

    default_currency: str = Field(default="ZAR")

    # Storage
    database_path: Path = Field(default=Path("data") / "claims.db")
    attachments_dir: Path = Field(default=Path("data") / "receipts")
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL used when building receipt links",
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    def budget_for(self, department: str) -> Decimal:
        """Annual allocation for a department, falling back to the default."""
        return self.department_budgets.get(department, self.default_department_budget)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-reading environment on every call.
    """
    return Settings()


# Convenience access
settings = get_settings()
