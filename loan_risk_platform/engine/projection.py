"""
Entity Financial Projection
===========================

Year-by-year projection of one borrower's profit and loss and balance sheet
along a single simulated path.

Each year:

1. Revenue and operating costs grow by their expected rate plus the year's
   shock; EBITDA is their difference.
2. Interest, principal and disbursements of every active loan are read from
   the loan's schedule folded onto simulation years.
3. Tax is charged on positive pre-tax income (EBITDA less interest).
4. Cash moves by operating cash flow, disbursements and debt service;
   interest is served before principal. Debt follows the loan schedules.
   Equity is total assets less debt.
5. Collateral values take a lognormal step; effective collateral is the
   value after haircut and prior-ranking claims.
6. The solvency tests run on the year-end snapshot. A default is terminal:
   later years repeat the default-year balance sheet with no debt service,
   and loss given default is computed from the exposure and the effective
   collateral securing the lender's own loans.

The projector holds only read-only inputs; every call to
:meth:`EntityFinancialProjector.project` returns a fresh
:class:`SimulationPath`.

Author: Loan Risk Platform Development Team
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..config import Settings, get_settings
from .amortization import AmortizationScheduler, LoanTerms
from .correlation import CorrelationMatrix, build_factor_correlation
from .exceptions import MissingMarketData
from .market_data import (
    MarketData,
    PropertyType,
    PropertyTypeParameters,
    Sector,
    SectorExposure,
    resolve_property_types,
    resolve_sectors,
)
from .scenarios import (
    IDIO_COLLATERAL,
    IDIO_COST,
    IDIO_REVENUE,
    CollateralShockModel,
    RevenueShockModel,
)
from .solvency import DefaultReason, SolvencyEvaluator, SolvencySnapshot

logger = logging.getLogger("LoanRisk.Projection")

# Interest coverage reported when no interest is due
NO_INTEREST_COVERAGE = 999.0


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class FinancialSnapshot:
    """
    Starting financials of an entity for its most recent book year.

    Liabilities not modelled as loans are implied by
    ``total_assets - equity - opening loan balances`` and held constant.
    """

    revenue: float
    operating_costs: float
    equity: float
    total_assets: float
    liquid_assets: float
    book_year: Optional[int] = None

    @property
    def fixed_assets(self) -> float:
        return self.total_assets - self.liquid_assets

    @property
    def ebitda(self) -> float:
        return self.revenue - self.operating_costs


@dataclass(frozen=True)
class CollateralPosition:
    """
    Collateral securing a loan.

    Attributes
    ----------
    collateral_id : str
        Identifier.
    appraisal_value : float
        Appraised value.
    property_type : PropertyType, optional
        Collateral class; drives the value factor and parameters.
    haircut : float
        Liquidation haircut as a fraction of value (0.25 = 25%).
    subordination : float
        Prior-ranking claims on the collateral (e.g. a first mortgage).
    indexed_value : float, optional
        Current market-indexed value, when known.
    """

    collateral_id: str
    appraisal_value: float
    property_type: Optional[PropertyType] = None
    haircut: float = 0.0
    subordination: float = 0.0
    indexed_value: Optional[float] = None

    @property
    def starting_value(self) -> float:
        return self.indexed_value if self.indexed_value is not None else self.appraisal_value

    def effective_value(self, value: float) -> float:
        """Value after haircut and prior-ranking claims, floored at zero."""
        return max(0.0, value * (1.0 - self.haircut) - self.subordination)


@dataclass(frozen=True)
class LoanPosition:
    """
    A loan of the entity.

    Attributes
    ----------
    loan_id : str
        Identifier.
    terms : LoanTerms
        Contract terms.
    start_offset_months : int
        Simulation month preceding the loan's first month. Zero or negative
        for loans on the opening balance sheet, positive for loans disbursed
        during the horizon.
    collateral : tuple of CollateralPosition
        Collateral securing the loan.
    is_external : bool
        Loan from another lender: serviced and counted as debt, but excluded
        from exposure at default and from lender interest.
    """

    loan_id: str
    terms: LoanTerms
    start_offset_months: int = 0
    collateral: Tuple[CollateralPosition, ...] = ()
    is_external: bool = False

    @property
    def is_secured(self) -> bool:
        return bool(self.collateral)


@dataclass(frozen=True)
class EntityProfile:
    """
    Everything the projector needs to know about one borrower.

    Attributes
    ----------
    entity_id : str
        Identifier.
    snapshot : FinancialSnapshot
        Starting financials.
    loans : tuple of LoanPosition
        Loans of the entity.
    exposure : SectorExposure
        Revenue split by sector; empty when unknown.
    revenue_growth, cost_growth : float, optional
        Entity-specific expected growth; model defaults when omitted.
    residual_volatility : float, optional
        Entity-specific residual revenue volatility.
    degraded_inputs : tuple of str
        Inputs that were missing and replaced upstream.
    """

    entity_id: str
    snapshot: FinancialSnapshot
    loans: Tuple[LoanPosition, ...] = ()
    exposure: SectorExposure = field(default_factory=SectorExposure)
    revenue_growth: Optional[float] = None
    cost_growth: Optional[float] = None
    residual_volatility: Optional[float] = None
    degraded_inputs: Tuple[str, ...] = ()

    @property
    def property_types(self) -> List[Optional[PropertyType]]:
        return [c.property_type for loan in self.loans for c in loan.collateral]


@dataclass(frozen=True)
class ModelParameters:
    """
    Model calibration shared by all entities of a run.

    Growth and volatilities are annual decimals.
    """

    n_years: int = 5
    revenue_growth: float = 0.0
    cost_growth: float = 0.02
    revenue_volatility: float = 0.15
    cost_volatility: float = 0.10
    tax_rate: float = 0.21
    collateral_return: float = 0.02
    collateral_volatility: float = 0.10

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, n_years: Optional[int] = None) -> "ModelParameters":
        cfg = settings or get_settings()
        return cls(
            n_years=n_years if n_years is not None else cfg.mc_years,
            revenue_growth=cfg.revenue_growth,
            cost_growth=cfg.cost_growth,
            revenue_volatility=cfg.revenue_volatility,
            cost_volatility=cfg.cost_volatility,
            tax_rate=cfg.tax_rate,
            collateral_return=cfg.collateral_return,
            collateral_volatility=cfg.collateral_volatility,
        )

    @property
    def default_collateral_parameters(self) -> PropertyTypeParameters:
        return PropertyTypeParameters(self.collateral_return, self.collateral_volatility)


# =============================================================================
# Outputs
# =============================================================================


@dataclass
class YearResult:
    """Projected figures of one path-year."""

    year: int
    sector_shocks: Dict[str, float]
    revenue_shock: float
    cost_shock: float
    collateral_return: float
    revenue: float
    operating_costs: float
    ebitda: float
    interest: float
    principal: float
    disbursement: float
    tax: float
    net_income: float
    interest_paid: float
    principal_paid: float
    liquid_assets: float
    total_assets: float
    total_debt: float
    equity: float
    loan_outstanding: float
    collateral_value: float
    effective_collateral: float
    is_solvent: bool
    default_reason: Optional[DefaultReason] = None

    @property
    def debt_service(self) -> float:
        return self.interest + self.principal

    @property
    def interest_coverage(self) -> float:
        return self.ebitda / self.interest if self.interest > 0 else NO_INTEREST_COVERAGE

    @property
    def cash_flow(self) -> float:
        """Operating cash flow after tax and debt service."""
        return self.ebitda - self.tax - self.interest - self.principal

    @property
    def cannot_pay_interest(self) -> bool:
        return self.interest_paid + 1e-9 < self.interest


@dataclass
class SimulationPath:
    """
    One simulated path of one entity.

    Attributes
    ----------
    path_index : int
        Path number within the run.
    entity_id : str
        Entity projected.
    years : list of YearResult
        One row per simulation year.
    default_year : int, optional
        First year flagged insolvent.
    default_reason : DefaultReason, optional
        First triggered test in the default year.
    exposure_at_default : float
        Lender exposure (non-external loans) when the default occurred.
    recovery : float
        Collateral recovery, capped at the exposure.
    loss : float
        Exposure less recovery.
    lender_interest : float
        Interest received on non-external loans over the path.
    """

    path_index: int
    entity_id: str
    years: List[YearResult]
    default_year: Optional[int] = None
    default_reason: Optional[DefaultReason] = None
    exposure_at_default: float = 0.0
    recovery: float = 0.0
    loss: float = 0.0
    lender_interest: float = 0.0

    @property
    def defaulted(self) -> bool:
        return self.default_year is not None

    @property
    def lgd(self) -> float:
        """Loss given default as a fraction of exposure."""
        return self.loss / self.exposure_at_default if self.exposure_at_default > 0 else 0.0

    @property
    def ending_equity(self) -> float:
        return self.years[-1].equity if self.years else 0.0


# =============================================================================
# Projector
# =============================================================================


def required_factors(entities: Iterable[EntityProfile], market_data: MarketData) -> Tuple[List[Sector], List[PropertyType]]:
    """
    Sector and collateral factors needed to project ``entities``.

    Property types without market parameters are left out; their collateral
    falls back to default parameters.
    """
    sectors: List[Sector] = []
    types: List[Optional[PropertyType]] = []
    for entity in entities:
        sectors.extend(entity.exposure.sectors)
        types.extend(entity.property_types)
    property_types = [p for p in resolve_property_types(types) if p in market_data.property_parameters]
    return resolve_sectors(sectors), property_types


def correlation_for(entities: Sequence[EntityProfile], market_data: MarketData) -> CorrelationMatrix:
    """Factor correlation matrix covering ``entities``."""
    sectors, property_types = required_factors(entities, market_data)
    return build_factor_correlation(market_data, sectors, property_types)


class EntityFinancialProjector:
    """
    Project one entity along simulated paths.

    Parameters
    ----------
    entity : EntityProfile
        Borrower to project.
    params : ModelParameters
        Model calibration.
    market_data : MarketData
        Sector and collateral parameters.
    correlation : CorrelationMatrix
        Factor correlation used to draw the shocks; factor positions are
        looked up in it.
    evaluator : SolvencyEvaluator, optional
        Default tests; configured from settings when omitted.
    scheduler : AmortizationScheduler, optional
        Schedule generator.
    """

    def __init__(
        self,
        entity: EntityProfile,
        params: ModelParameters,
        market_data: MarketData,
        correlation: CorrelationMatrix,
        evaluator: Optional[SolvencyEvaluator] = None,
        scheduler: Optional[AmortizationScheduler] = None,
    ) -> None:
        self.entity = entity
        self.params = params
        self.evaluator = evaluator or SolvencyEvaluator()
        scheduler = scheduler or AmortizationScheduler()
        self.degraded_inputs: List[str] = list(entity.degraded_inputs)
        n_years = params.n_years

        self.revenue_model = RevenueShockModel.build(
            entity.exposure,
            market_data,
            correlation,
            params.revenue_volatility,
            entity.residual_volatility,
        )
        if entity.exposure.is_empty:
            self.degraded_inputs.append(f"{entity.entity_id}: no sector breakdown, aggregate revenue volatility used")
        self.revenue_growth = self._resolve_revenue_growth(market_data)
        self.cost_growth = params.cost_growth if entity.cost_growth is None else entity.cost_growth
        self.sector_labels = [
            correlation.labels[i] for i in self.revenue_model.factor_indices
        ]

        # Loan cash flows folded onto simulation years, shape (n_loans, n_years)
        loans = list(entity.loans)
        self.loans = loans
        n_loans = len(loans)
        self.interest = np.zeros((n_loans, n_years))
        self.principal = np.zeros((n_loans, n_years))
        self.disbursement = np.zeros((n_loans, n_years))
        self.outstanding = np.zeros((n_loans, n_years))
        self.opening_outstanding = np.zeros(n_loans)
        for i, loan in enumerate(loans):
            yearly = scheduler.aggregate_yearly(loan.terms, n_years, loan.start_offset_months)
            for j, row in enumerate(yearly):
                self.interest[i, j] = row.interest
                self.principal[i, j] = row.principal
                self.disbursement[i, j] = row.disbursement
                self.outstanding[i, j] = row.outstanding
            if loan.start_offset_months <= 0:
                self.opening_outstanding[i] = scheduler.outstanding_after(loan.terms, -loan.start_offset_months)
        self.lender_mask = np.array([not loan.is_external for loan in loans], dtype=bool)
        self.secured_mask = np.array([loan.is_secured for loan in loans], dtype=bool)

        # Collateral, flattened with the owning loan index
        self.collateral: List[Tuple[int, CollateralPosition, CollateralShockModel]] = []
        for i, loan in enumerate(loans):
            for item in loan.collateral:
                model = CollateralShockModel.build(
                    item.property_type, market_data, correlation, params.default_collateral_parameters
                )
                if model.degraded:
                    self.degraded_inputs.append(
                        f"{entity.entity_id}/{item.collateral_id}: no market parameters, "
                        "default collateral return/volatility and appraisal value used"
                    )
                self.collateral.append((i, item, model))

        snap = entity.snapshot
        self.other_liabilities = snap.total_assets - snap.equity - float(self.opening_outstanding.sum())
        if self.other_liabilities < 0:
            logger.warning(
                "%s: opening loan balances exceed liabilities implied by the snapshot by %.2f",
                entity.entity_id,
                -self.other_liabilities,
            )

    def _resolve_revenue_growth(self, market_data: MarketData) -> float:
        if self.entity.revenue_growth is not None:
            return self.entity.revenue_growth
        exposure = self.entity.exposure
        if exposure.is_empty:
            return self.params.revenue_growth
        growth = 0.0
        for sector in exposure.sectors:
            try:
                growth += exposure.weight(sector) * market_data.sector_profile(sector).expected_growth
            except MissingMarketData:
                growth += exposure.weight(sector) * self.params.revenue_growth
        return growth

    def project(self, path_index: int, factor_shocks: np.ndarray, idiosyncratic: np.ndarray) -> SimulationPath:
        """
        Project the entity along one path.

        Parameters
        ----------
        path_index : int
            Path number, recorded on the result.
        factor_shocks : np.ndarray
            Correlated systemic shocks, shape ``(n_years, n_factors)``.
        idiosyncratic : np.ndarray
            Entity draws, shape ``(n_years, 3)``.

        Returns
        -------
        SimulationPath
            Projected years and default outcome.
        """
        p = self.params
        snap = self.entity.snapshot
        revenue = snap.revenue
        costs = snap.operating_costs
        liquid = snap.liquid_assets
        fixed_assets = snap.fixed_assets
        collateral_values = [item.starting_value for _, item, _ in self.collateral]
        lender_outstanding_prev = float(self.opening_outstanding[self.lender_mask].sum())

        path = SimulationPath(path_index=path_index, entity_id=self.entity.entity_id, years=[])

        for t in range(p.n_years):
            year = t + 1
            if path.defaulted:
                frozen = path.years[-1]
                path.years.append(
                    replace(
                        frozen,
                        year=year,
                        interest=0.0,
                        principal=0.0,
                        disbursement=0.0,
                        tax=0.0,
                        net_income=0.0,
                        interest_paid=0.0,
                        principal_paid=0.0,
                    )
                )
                continue

            factors = factor_shocks[t]
            draws = idiosyncratic[t]

            # 1. Operating result
            revenue_shock = self.revenue_model.shock(factors, draws[IDIO_REVENUE])
            cost_shock = p.cost_volatility * draws[IDIO_COST]
            revenue = max(0.0, revenue * (1.0 + self.revenue_growth + revenue_shock))
            costs = max(0.0, costs * (1.0 + self.cost_growth + cost_shock))
            ebitda = revenue - costs

            # 2. Debt service
            interest = float(self.interest[:, t].sum())
            principal = float(self.principal[:, t].sum())
            disbursement = float(self.disbursement[:, t].sum())
            loan_outstanding = float(self.outstanding[:, t].sum())

            # 3. Tax and net income
            tax = max(0.0, ebitda - interest) * p.tax_rate
            net_income = ebitda - interest - tax

            # 4. Cash and balance sheet
            cash_available = liquid + disbursement + ebitda - tax
            interest_paid = min(interest, max(cash_available, 0.0))
            principal_paid = min(principal, max(cash_available - interest_paid, 0.0))
            liquid = cash_available - interest - principal
            total_assets = liquid + fixed_assets
            total_debt = self.other_liabilities + loan_outstanding
            equity = total_assets - total_debt

            if interest > 0:
                lender_interest = float(self.interest[self.lender_mask, t].sum())
                path.lender_interest += lender_interest * interest_paid / interest

            # 5. Collateral
            revenue_z = self.revenue_model.standardized(factors, draws[IDIO_REVENUE])
            old_total = sum(collateral_values)
            effective_secured = 0.0
            effective_lender = 0.0
            for k, (loan_idx, item, model) in enumerate(self.collateral):
                collateral_values[k] = model.step(collateral_values[k], factors, revenue_z, draws[IDIO_COLLATERAL])
                effective = item.effective_value(collateral_values[k])
                effective_secured += effective
                if self.lender_mask[loan_idx]:
                    effective_lender += effective
            collateral_total = sum(collateral_values)
            collateral_return = collateral_total / old_total - 1.0 if old_total > 0 else 0.0
            secured_outstanding = float(self.outstanding[self.secured_mask, t].sum())

            # 6. Solvency
            check = self.evaluator.evaluate(
                SolvencySnapshot(
                    year=year,
                    equity=equity,
                    cash_available=cash_available,
                    scheduled_debt_service=interest + principal,
                    secured_outstanding=secured_outstanding,
                    effective_collateral=effective_secured,
                )
            )

            path.years.append(
                YearResult(
                    year=year,
                    sector_shocks={label: float(factors[i]) for label, i in zip(self.sector_labels, self.revenue_model.factor_indices)},
                    revenue_shock=revenue_shock,
                    cost_shock=cost_shock,
                    collateral_return=collateral_return,
                    revenue=revenue,
                    operating_costs=costs,
                    ebitda=ebitda,
                    interest=interest,
                    principal=principal,
                    disbursement=disbursement,
                    tax=tax,
                    net_income=net_income,
                    interest_paid=interest_paid,
                    principal_paid=principal_paid,
                    liquid_assets=liquid,
                    total_assets=total_assets,
                    total_debt=total_debt,
                    equity=equity,
                    loan_outstanding=loan_outstanding,
                    collateral_value=collateral_total,
                    effective_collateral=effective_secured,
                    is_solvent=not check.is_default,
                    default_reason=check.reason,
                )
            )

            if check.is_default:
                exposure = lender_outstanding_prev + float(self.disbursement[self.lender_mask, t].sum())
                path.default_year = year
                path.default_reason = check.reason
                path.exposure_at_default = exposure
                path.recovery = min(effective_lender, exposure)
                path.loss = exposure - path.recovery
            else:
                lender_outstanding_prev = float(self.outstanding[self.lender_mask, t].sum())

        return path
