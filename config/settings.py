"""
Configuration settings for the ledger reporting core.

All tunables come from environment variables with sane defaults, so the
same code runs in tests, the demo entry point and production without edits.
"""
import os
from dataclasses import dataclass, field
from typing import Optional, Dict


def _optional_seconds(env_name: str, default: str) -> Optional[float]:
    """Read a refresh interval; an empty value or 0 disables periodic refresh."""
    raw = os.getenv(env_name, default).strip()
    if not raw:
        return None
    value = float(raw)
    return value if value > 0 else None


@dataclass
class CacheConfig:
    """Report cache refresh policy."""
    dashboard_refresh_seconds: Optional[float] = field(
        default_factory=lambda: _optional_seconds("DASHBOARD_REFRESH_SECONDS", "30")
    )
    market_rates_refresh_seconds: Optional[float] = field(
        default_factory=lambda: _optional_seconds("MARKET_RATES_REFRESH_SECONDS", "60")
    )
    # How often the background sweeper looks for expired entries
    sweep_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("CACHE_SWEEP_SECONDS", "15"))
    )

    def refresh_intervals(self) -> Dict[str, Optional[float]]:
        """Refresh interval per report kind. Kinds not listed refresh only on invalidation."""
        return {
            "dashboard_metrics": self.dashboard_refresh_seconds,
            "market_rates": self.market_rates_refresh_seconds,
        }


@dataclass
class ReportConfig:
    """Report windows and fetch limits."""
    trend_days: int = field(
        default_factory=lambda: int(os.getenv("REPORT_TREND_DAYS", "30"))
    )
    recent_payments_limit: int = field(
        default_factory=lambda: int(os.getenv("REPORT_RECENT_PAYMENTS_LIMIT", "10"))
    )
    max_parallel_fetches: int = field(
        default_factory=lambda: int(os.getenv("REPORT_MAX_PARALLEL_FETCHES", "8"))
    )
    # Label only; dates handed to the core are already local calendar dates
    timezone: str = field(
        default_factory=lambda: os.getenv("REPORT_TIMEZONE", "Asia/Kolkata")
    )


@dataclass
class AppConfig:
    """Main application configuration."""
    cache: CacheConfig = field(default_factory=CacheConfig)
    reports: ReportConfig = field(default_factory=ReportConfig)

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


def get_config() -> AppConfig:
    """Factory function to get application configuration."""
    return AppConfig()
