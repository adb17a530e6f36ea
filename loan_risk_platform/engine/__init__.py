"""
Loan Credit Risk Simulation Engine
==================================

This module provides the simulation entry points for loan-book credit risk
analysis. It orchestrates the following steps:

1. **Request Loading**: Parse and validate borrower financials, loans and collateral.
2. **Schedules**: Build amortization schedules and fold them onto simulation years.
3. **Scenarios**: Draw correlated sector and collateral shocks per path.
4. **Projection**: Project each borrower's P&L and balance sheet and test solvency.
5. **Aggregation**: Fold paths into default probability, loss and duration statistics.

The main entry points are :func:`run_entity_request` and
:func:`run_portfolio_request`, which accept raw request dicts.

Example
-------
>>> from loan_risk_platform.engine import run_portfolio_request
>>> result = run_portfolio_request({"entities": [...], "simulation": {"n_paths": 5000}})
>>> print(result.summary()["joint_default_rate"])

See Also
--------
loader.RequestLoader : Parses and validates simulation requests.
monte_carlo.run_entity_simulation : Single-borrower simulation.
portfolio.PortfolioAggregator : Correlated portfolio simulation.
duration.DurationAnalyzer : Duration and rate sensitivity of running loans.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..config import Settings, get_settings
from .amortization import AmortizationScheduler, LoanTerms, RedemptionType, ScheduleEntry
from .duration import ActiveLoan, DurationAnalyzer, DurationReport
from .exceptions import (
    EngineError,
    InvalidCorrelationInput,
    InvalidLoanTerms,
    MissingMarketData,
    RequestValidationError,
)
from .fractional import FractionalPaymentResult, FractionalPeriodCalculator
from .loader import RequestLoader
from .market_data import MarketData, PropertyType, Sector, SectorExposure
from .monte_carlo import MonteCarloParameters, SimulationResult, run_entity_simulation
from .portfolio import PortfolioAggregator, PortfolioSimulationResult
from .projection import (
    CollateralPosition,
    EntityProfile,
    FinancialSnapshot,
    LoanPosition,
    ModelParameters,
)
from .scenarios import CorrelatedScenarioGenerator
from .solvency import SolvencyEvaluator, SolvencyThresholds


def run_entity_request(json_data: Dict[str, Any], settings: Optional[Settings] = None) -> SimulationResult:
    """
    Validate a single-entity request and run its simulation.

    Parameters
    ----------
    json_data : dict
        Request with an ``entity`` block and optional ``simulation`` and
        ``model`` overrides.
    settings : Settings, optional
        Source of defaults.

    Returns
    -------
    SimulationResult
        Aggregated statistics for the entity.
    """
    cfg = settings or get_settings()
    request = RequestLoader(cfg).load_entity(json_data)
    return run_entity_simulation(
        request.entity,
        mc_params=request.mc_params,
        model_params=request.model_params,
        include_duration=request.include_duration,
        settings=cfg,
    )


def run_portfolio_request(
    json_data: Dict[str, Any], settings: Optional[Settings] = None
) -> PortfolioSimulationResult:
    """Validate a portfolio request and run its correlated simulation."""
    cfg = settings or get_settings()
    request = RequestLoader(cfg).load_portfolio(json_data)
    aggregator = PortfolioAggregator(
        mc_params=request.mc_params,
        model_params=request.model_params,
        loss_threshold=request.loss_threshold,
        settings=cfg,
    )
    return aggregator.run(request.entities, include_duration=request.include_duration)


__all__ = [
    "ActiveLoan",
    "AmortizationScheduler",
    "CollateralPosition",
    "CorrelatedScenarioGenerator",
    "DurationAnalyzer",
    "DurationReport",
    "EngineError",
    "EntityProfile",
    "FinancialSnapshot",
    "FractionalPaymentResult",
    "FractionalPeriodCalculator",
    "InvalidCorrelationInput",
    "InvalidLoanTerms",
    "LoanPosition",
    "LoanTerms",
    "MarketData",
    "MissingMarketData",
    "ModelParameters",
    "MonteCarloParameters",
    "PortfolioAggregator",
    "PortfolioSimulationResult",
    "PropertyType",
    "RedemptionType",
    "RequestLoader",
    "RequestValidationError",
    "ScheduleEntry",
    "Sector",
    "SectorExposure",
    "SimulationResult",
    "SolvencyEvaluator",
    "SolvencyThresholds",
    "run_entity_request",
    "run_entity_simulation",
    "run_portfolio_request",
]
