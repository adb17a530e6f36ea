"""
Financial Projection and Solvency Tests
=======================================

Tests for the year-by-year entity projection and the default tests:
- Balance sheet identities along a deterministic path
- Sector shocks flowing into revenue
- Terminal default with frozen later years
- Loss given default from effective collateral
- Individual solvency tests and their configuration
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from loan_risk_platform.engine.amortization import AmortizationScheduler, LoanTerms
from loan_risk_platform.engine.market_data import (
    MarketData,
    PropertyType,
    PropertyTypeParameters,
    Sector,
    SectorExposure,
)
from loan_risk_platform.engine.projection import (
    NO_INTEREST_COVERAGE,
    CollateralPosition,
    EntityFinancialProjector,
    EntityProfile,
    FinancialSnapshot,
    LoanPosition,
    ModelParameters,
    correlation_for,
)
from loan_risk_platform.engine.solvency import (
    DefaultReason,
    SolvencyEvaluator,
    SolvencySnapshot,
    SolvencyThresholds,
)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def flat_params() -> ModelParameters:
    """No growth and no volatility: every path is deterministic."""
    return ModelParameters(
        n_years=3,
        revenue_growth=0.0,
        cost_growth=0.0,
        revenue_volatility=0.0,
        cost_volatility=0.0,
        tax_rate=0.25,
        collateral_return=0.0,
        collateral_volatility=0.0,
    )


@pytest.fixture
def flat_market() -> MarketData:
    return MarketData(
        property_parameters={p: PropertyTypeParameters(0.0, 0.0) for p in PropertyType},
    )


@pytest.fixture
def term_loan() -> LoanPosition:
    return LoanPosition("L1", LoanTerms(principal=500_000, annual_rate=6.0, tenor_months=120))


@pytest.fixture
def healthy_entity(term_loan) -> EntityProfile:
    return EntityProfile(
        entity_id="E1",
        snapshot=FinancialSnapshot(
            revenue=1_000_000,
            operating_costs=800_000,
            equity=300_000,
            total_assets=1_000_000,
            liquid_assets=100_000,
        ),
        loans=(term_loan,),
    )


def run_flat(entity, params, market, factor_values=None):
    """Project one path with zero idiosyncratic draws."""
    correlation = correlation_for([entity], market)
    projector = EntityFinancialProjector(entity, params, market, correlation)
    factors = np.zeros((params.n_years, correlation.size))
    if factor_values is not None:
        factors[:] = factor_values
    return projector, projector.project(0, factors, np.zeros((params.n_years, 3)))


# =============================================================================
# Projection Tests
# =============================================================================

class TestProjection:
    """Tests for a solvent deterministic path."""

    def test_equity_rolls_forward_by_net_income(self, healthy_entity, flat_params, flat_market):
        _, path = run_flat(healthy_entity, flat_params, flat_market)

        assert not path.defaulted
        equity = healthy_entity.snapshot.equity
        for year in path.years:
            assert year.equity == pytest.approx(equity + year.net_income)
            equity = year.equity

    def test_debt_service_follows_schedule(self, healthy_entity, flat_params, flat_market, term_loan):
        yearly = AmortizationScheduler().aggregate_yearly(term_loan.terms, 3)
        _, path = run_flat(healthy_entity, flat_params, flat_market)

        for year, expected in zip(path.years, yearly):
            assert year.interest == pytest.approx(expected.interest)
            assert year.principal == pytest.approx(expected.principal)
            assert year.loan_outstanding == pytest.approx(expected.outstanding)
            assert year.interest_paid == pytest.approx(expected.interest)

    def test_tax_and_cash(self, healthy_entity, flat_params, flat_market):
        _, path = run_flat(healthy_entity, flat_params, flat_market)
        first = path.years[0]

        assert first.ebitda == pytest.approx(200_000)
        assert first.tax == pytest.approx(0.25 * (200_000 - first.interest))
        assert first.liquid_assets == pytest.approx(100_000 + first.cash_flow)
        assert first.total_debt == pytest.approx(200_000 + first.loan_outstanding)

    def test_lender_interest_accumulates(self, healthy_entity, flat_params, flat_market):
        _, path = run_flat(healthy_entity, flat_params, flat_market)
        assert path.lender_interest == pytest.approx(sum(y.interest for y in path.years))

    def test_sector_shock_drives_revenue(self, healthy_entity, flat_params, flat_market):
        """A +0.5 Retail factor shock at 20% volatility adds 10% revenue on top of growth."""
        entity = EntityProfile(
            entity_id="E2",
            snapshot=healthy_entity.snapshot,
            loans=healthy_entity.loans,
            exposure=SectorExposure.single(Sector.RETAIL),
        )
        projector, path = run_flat(entity, flat_params, flat_market, factor_values=0.5)
        first = path.years[0]

        growth = flat_market.sector_profile(Sector.RETAIL).expected_growth
        assert projector.revenue_growth == pytest.approx(growth)
        assert first.sector_shocks == {"sector:Retail": pytest.approx(0.5)}
        assert first.revenue_shock == pytest.approx(0.10)
        assert first.revenue == pytest.approx(1_000_000 * (1 + growth + 0.10))

    def test_empty_exposure_flagged_degraded(self, healthy_entity, flat_params, flat_market):
        projector, _ = run_flat(healthy_entity, flat_params, flat_market)
        assert any("no sector breakdown" in note for note in projector.degraded_inputs)

    def test_loan_disbursed_during_horizon(self, healthy_entity, flat_params, flat_market, term_loan):
        new_loan = LoanPosition("L2", LoanTerms(100_000, 5.0, 60), start_offset_months=12)
        entity = EntityProfile("E3", healthy_entity.snapshot, loans=(term_loan, new_loan))
        projector, path = run_flat(entity, flat_params, flat_market)

        assert path.years[0].disbursement == 0.0
        assert path.years[1].disbursement == pytest.approx(100_000)
        # the new loan is not on the opening balance sheet
        assert projector.other_liabilities == pytest.approx(200_000)

    def test_no_interest_coverage(self, healthy_entity, flat_params, flat_market):
        entity = EntityProfile("E4", healthy_entity.snapshot)
        _, path = run_flat(entity, flat_params, flat_market)
        assert path.years[0].interest_coverage == NO_INTEREST_COVERAGE


# =============================================================================
# Default Tests
# =============================================================================

class TestDefault:
    """Tests for terminal default and loss given default."""

    def test_negative_equity_default_is_terminal(self, flat_params, flat_market, term_loan):
        entity = EntityProfile(
            "WEAK",
            FinancialSnapshot(
                revenue=1_000_000,
                operating_costs=1_100_000,
                equity=10_000,
                total_assets=710_000,
                liquid_assets=100_000,
            ),
            loans=(term_loan,),
        )
        _, path = run_flat(entity, flat_params, flat_market)

        assert path.default_year == 1
        assert path.default_reason is DefaultReason.NEGATIVE_EQUITY
        assert not path.years[0].is_solvent
        for later in path.years[1:]:
            assert later.debt_service == 0.0
            assert later.equity == path.years[0].equity
        assert path.exposure_at_default == pytest.approx(500_000)
        assert path.recovery == 0.0
        assert path.lgd == pytest.approx(1.0)

    def test_collateral_shortfall_and_recovery(self, healthy_entity, flat_params, flat_market):
        collateral = CollateralPosition(
            "C1", appraisal_value=400_000, property_type=PropertyType.RESIDENTIAL, haircut=0.25
        )
        loan = LoanPosition("L1", LoanTerms(500_000, 6.0, 120), collateral=(collateral,))
        entity = EntityProfile("SECURED", healthy_entity.snapshot, loans=(loan,))
        _, path = run_flat(entity, flat_params, flat_market)

        assert path.default_year == 1
        assert path.default_reason is DefaultReason.COLLATERAL_SHORTFALL
        assert path.years[0].effective_collateral == pytest.approx(300_000)
        assert path.recovery == pytest.approx(300_000)
        assert path.loss == pytest.approx(200_000)
        assert path.lgd == pytest.approx(0.4)

    def test_external_loan_excluded_from_exposure(self, flat_params, flat_market, term_loan):
        external = LoanPosition("BANK", LoanTerms(200_000, 4.0, 120), is_external=True)
        entity = EntityProfile(
            "WEAK2",
            FinancialSnapshot(1_000_000, 1_100_000, 10_000, 910_000, 100_000),
            loans=(term_loan, external),
        )
        _, path = run_flat(entity, flat_params, flat_market)

        assert path.defaulted
        assert path.exposure_at_default == pytest.approx(500_000)


# =============================================================================
# Solvency Evaluator Tests
# =============================================================================

class TestSolvencyEvaluator:
    """Tests for the individual default tests."""

    @pytest.fixture
    def evaluator(self) -> SolvencyEvaluator:
        return SolvencyEvaluator(SolvencyThresholds(collateral_shortfall_threshold=0.20))

    def test_solvent(self, evaluator):
        check = evaluator.evaluate(SolvencySnapshot(1, equity=100, cash_available=100, scheduled_debt_service=50))
        assert not check.is_default
        assert check.reason is None

    def test_negative_equity(self, evaluator):
        check = evaluator.evaluate(SolvencySnapshot(1, equity=-1, cash_available=100, scheduled_debt_service=50))
        assert check.reason is DefaultReason.NEGATIVE_EQUITY

    def test_liquidity_shortfall(self, evaluator):
        check = evaluator.evaluate(SolvencySnapshot(1, equity=10, cash_available=40, scheduled_debt_service=50))
        assert check.reason is DefaultReason.LIQUIDITY_SHORTFALL

    def test_no_debt_service_no_liquidity_default(self, evaluator):
        check = evaluator.evaluate(SolvencySnapshot(1, equity=10, cash_available=-5, scheduled_debt_service=0))
        assert not check.is_default

    def test_collateral_threshold_boundary(self, evaluator):
        at_limit = evaluator.evaluate(
            SolvencySnapshot(1, 10, 100, 50, secured_outstanding=100, effective_collateral=80)
        )
        beyond = evaluator.evaluate(
            SolvencySnapshot(1, 10, 100, 50, secured_outstanding=100, effective_collateral=79)
        )

        assert not at_limit.is_default
        assert at_limit.collateral_coverage == pytest.approx(0.8)
        assert beyond.reason is DefaultReason.COLLATERAL_SHORTFALL

    def test_all_triggered_in_order(self, evaluator):
        check = evaluator.evaluate(
            SolvencySnapshot(1, -1, 0, 50, secured_outstanding=100, effective_collateral=0)
        )
        assert check.triggered == (
            DefaultReason.NEGATIVE_EQUITY,
            DefaultReason.LIQUIDITY_SHORTFALL,
            DefaultReason.COLLATERAL_SHORTFALL,
        )

    def test_disabled_checks(self):
        evaluator = SolvencyEvaluator(
            SolvencyThresholds(check_negative_equity=False, check_liquidity=False, check_collateral_shortfall=False)
        )
        check = evaluator.evaluate(SolvencySnapshot(1, -1, 0, 50, secured_outstanding=100, effective_collateral=0))
        assert not check.is_default
