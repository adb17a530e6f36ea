"""
Loan Risk Platform Configuration
================================

Centralized configuration management using environment variables with sensible
defaults.

This module provides a cached ``Settings`` instance that loads configuration
from environment variables prefixed with ``LOANRISK_``. All settings have
defaults matching the reference calibration of the simulation model.

Environment Variables
---------------------
LOANRISK_LOG_LEVEL : str
    Logging level (DEBUG, INFO, WARNING, ERROR).
LOANRISK_MC_PATHS : int
    Default number of Monte Carlo paths (default: 10000).
LOANRISK_MC_SEED : int
    Default master seed (default: 42).
LOANRISK_MC_WORKERS : int
    Worker processes used when a run is parallel (default: 4).

Example
-------
Using environment variables::

    export LOANRISK_MC_PATHS=50000
    export LOANRISK_LOG_LEVEL=DEBUG

Accessing settings in code::

    from loan_risk_platform.config import settings
    print(f"Default paths: {settings.mc_paths}")
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict


def _get_env(key: str, default: Any, value_type: type = str) -> Any:
    """
    Get an environment variable with type conversion.

    Parameters
    ----------
    key : str
        Environment variable name (will be prefixed with LOANRISK_).
    default : Any
        Default value if not set.
    value_type : type
        Type to convert to (str, int, float, bool, list).

    Returns
    -------
    Any
        The environment variable value converted to the specified type.
    """
    env_name = f"LOANRISK_{key.upper()}"
    env_value = os.environ.get(env_name)

    if env_value is None:
        return default

    try:
        if value_type == bool:
            return env_value.lower() in ("true", "1", "yes", "on")
        elif value_type == int:
            return int(env_value)
        elif value_type == float:
            return float(env_value)
        elif value_type == list:
            try:
                return json.loads(env_value)
            except json.JSONDecodeError:
                return env_value.split(",")
        else:
            return env_value
    except (ValueError, TypeError):
        return default


class Settings:
    """
    Engine configuration loaded from environment variables.

    Rates, growths and volatilities are annual decimals (0.02 = 2%).
    Loan rates elsewhere in the engine are quoted in percent.

    Example
    -------
    >>> from loan_risk_platform.config import settings
    >>> print(f"Tax rate: {settings.tax_rate:.0%}")
    """

    def __init__(self) -> None:
        """Initialize settings from environment variables."""
        # =====================================================================
        # Logging Configuration
        # =====================================================================
        self.log_level: str = _get_env("LOG_LEVEL", "INFO", str)
        self.log_format: str = _get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s", str)

        # =====================================================================
        # Monte Carlo Defaults
        # =====================================================================
        self.mc_paths: int = _get_env("MC_PATHS", 10_000, int)
        self.mc_years: int = _get_env("MC_YEARS", 5, int)
        self.mc_seed: int = _get_env("MC_SEED", 42, int)
        self.mc_parallel: bool = _get_env("MC_PARALLEL", False, bool)
        self.mc_workers: int = _get_env("MC_WORKERS", 4, int)
        self.mc_batch_size: int = _get_env("MC_BATCH_SIZE", 500, int)
        self.mc_sample_paths: bool = _get_env("MC_SAMPLE_PATHS", True, bool)

        # =====================================================================
        # Entity Model Defaults
        # =====================================================================
        self.revenue_growth: float = _get_env("REVENUE_GROWTH", 0.00, float)
        self.cost_growth: float = _get_env("COST_GROWTH", 0.02, float)
        self.revenue_volatility: float = _get_env("REVENUE_VOLATILITY", 0.15, float)
        self.cost_volatility: float = _get_env("COST_VOLATILITY", 0.10, float)
        self.tax_rate: float = _get_env("TAX_RATE", 0.21, float)

        # =====================================================================
        # Collateral Defaults
        # =====================================================================
        self.collateral_return: float = _get_env("COLLATERAL_RETURN", 0.02, float)
        self.collateral_volatility: float = _get_env("COLLATERAL_VOLATILITY", 0.10, float)
        self.collateral_cross_correlation: float = _get_env("COLLATERAL_CROSS_CORRELATION", 0.50, float)

        # =====================================================================
        # Correlation Defaults
        # =====================================================================
        self.default_sector_correlation: float = _get_env("DEFAULT_SECTOR_CORRELATION", 0.35, float)
        self.default_sector_collateral_correlation: float = _get_env(
            "DEFAULT_SECTOR_COLLATERAL_CORRELATION", 0.30, float
        )
        self.psd_eigenvalue_floor: float = _get_env("PSD_EIGENVALUE_FLOOR", 1e-8, float)

        # =====================================================================
        # Solvency Thresholds
        # =====================================================================
        self.collateral_shortfall_threshold: float = _get_env("COLLATERAL_SHORTFALL_THRESHOLD", 0.20, float)
        self.check_negative_equity: bool = _get_env("CHECK_NEGATIVE_EQUITY", True, bool)
        self.check_collateral_shortfall: bool = _get_env("CHECK_COLLATERAL_SHORTFALL", True, bool)
        self.check_liquidity: bool = _get_env("CHECK_LIQUIDITY", True, bool)

        # =====================================================================
        # Portfolio Aggregation
        # =====================================================================
        self.portfolio_loss_threshold: float = _get_env("PORTFOLIO_LOSS_THRESHOLD", 0.05, float)

    @property
    def log_level_int(self) -> int:
        """Return the log level as an integer constant."""
        return getattr(logging, self.log_level.upper(), logging.INFO)

    def configure_logging(self) -> None:
        """
        Configure application logging based on settings.

        Sets up the root logger with the configured level and format.
        """
        logging.basicConfig(
            level=self.log_level_int,
            format=self.log_format,
        )
        logging.getLogger("LoanRisk").setLevel(self.log_level_int)


@lru_cache()
def get_settings() -> Settings:
    """
    Return the cached settings instance.

    Returns
    -------
    Settings
        Engine settings instance.

    Example
    -------
    >>> settings = get_settings()
    >>> print(settings.mc_paths)
    10000
    """
    return Settings()


# Module-level singleton for convenience
settings = get_settings()


def get_model_defaults() -> Dict[str, Any]:
    """
    Return the entity model defaults as a dictionary.

    Returns
    -------
    dict
        Growth, volatility, tax and collateral defaults.
    """
    return {
        "revenue_growth": settings.revenue_growth,
        "cost_growth": settings.cost_growth,
        "revenue_volatility": settings.revenue_volatility,
        "cost_volatility": settings.cost_volatility,
        "tax_rate": settings.tax_rate,
        "collateral_return": settings.collateral_return,
        "collateral_volatility": settings.collateral_volatility,
    }
