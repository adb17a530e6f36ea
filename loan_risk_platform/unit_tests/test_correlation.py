"""
Correlation and Scenario Generation Tests
=========================================

Tests for factor correlation matrices and correlated draws:
- Validation of malformed matrices
- Eigenvalue repair of matrices that are not positive semi-definite
- Convergence of empirical correlation to the input matrix
- Per-path random streams
- Revenue and collateral shock models
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from loan_risk_platform.engine.correlation import (
    CorrelationMatrix,
    build_factor_correlation,
    collateral_label,
    sector_label,
)
from loan_risk_platform.engine.exceptions import InvalidCorrelationInput
from loan_risk_platform.engine.market_data import (
    MarketData,
    PropertyType,
    PropertyTypeParameters,
    Sector,
    SectorExposure,
    SectorProfile,
)
from loan_risk_platform.engine.scenarios import (
    CollateralShockModel,
    CorrelatedScenarioGenerator,
    RevenueShockModel,
    empirical_correlation,
    gbm_step,
)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def two_sector_market() -> MarketData:
    """Retail and Hospitality at 20% volatility with 0.9 correlation."""
    return MarketData(
        sector_profiles={
            Sector.RETAIL: SectorProfile(0.20, 0.0),
            Sector.HOSPITALITY: SectorProfile(0.20, 0.0),
        },
        sector_correlations={(Sector.RETAIL, Sector.HOSPITALITY): 0.9},
    )


@pytest.fixture
def non_psd_matrix() -> CorrelationMatrix:
    return CorrelationMatrix(
        ["a", "b", "c"],
        [[1.0, 0.9, 0.9], [0.9, 1.0, -0.9], [0.9, -0.9, 1.0]],
    )


# =============================================================================
# Validation Tests
# =============================================================================

class TestValidation:
    """Malformed matrices are rejected before any draw."""

    @pytest.mark.parametrize(
        "values",
        [
            [[1.0, 0.5], [0.4, 1.0]],
            [[2.0, 0.5], [0.5, 1.0]],
            [[1.0, 1.5], [1.5, 1.0]],
            [[1.0, np.nan], [np.nan, 1.0]],
            [[1.0, 0.5, 0.0], [0.5, 1.0, 0.0]],
        ],
    )
    def test_malformed_matrix(self, values):
        with pytest.raises(InvalidCorrelationInput):
            CorrelationMatrix(["a", "b"], values).validate()

    def test_label_count_mismatch(self):
        with pytest.raises(InvalidCorrelationInput):
            CorrelationMatrix(["a"], np.eye(2)).validate()

    def test_generator_rejects_malformed_matrix(self):
        with pytest.raises(InvalidCorrelationInput):
            CorrelatedScenarioGenerator(CorrelationMatrix(["a", "b"], [[1.0, 0.3], [0.2, 1.0]]), seed=1)

    def test_invalid_input_is_value_error(self):
        with pytest.raises(ValueError):
            CorrelationMatrix(["a", "b"], [[1.0, 0.3], [0.2, 1.0]]).validate()


# =============================================================================
# Repair Tests
# =============================================================================

class TestRepair:
    """Tests for nearest positive semi-definite repair."""

    def test_valid_matrix_untouched(self):
        matrix = CorrelationMatrix(["a", "b"], [[1.0, 0.9], [0.9, 1.0]])
        result = matrix.ensure_psd()

        assert result is matrix
        assert not result.repaired

    def test_perfect_correlation_not_repaired(self):
        """A rank-one matrix is positive semi-definite and keeps its values."""
        matrix = CorrelationMatrix(["a", "b"], [[1.0, 1.0], [1.0, 1.0]])
        result = matrix.ensure_psd()

        assert result is matrix
        assert not result.repaired
        assert matrix.is_positive_semidefinite()
        L = result.cholesky_factor()
        assert np.allclose(L @ L.T, matrix.values, atol=1e-8)

    def test_perfect_correlation_generator(self):
        generator = CorrelatedScenarioGenerator(CorrelationMatrix(["a", "b"], [[1.0, 1.0], [1.0, 1.0]]), seed=5)
        shocks = generator.draw_factor_shocks(generator.path_rng(0), n_years=4)

        assert not generator.repaired
        np.testing.assert_allclose(shocks[:, 0], shocks[:, 1], atol=1e-4)

    def test_non_psd_matrix_has_no_factor(self, non_psd_matrix):
        with pytest.raises(InvalidCorrelationInput):
            non_psd_matrix.cholesky_factor()

    def test_repair_yields_psd_correlation(self, non_psd_matrix):
        assert non_psd_matrix.min_eigenvalue() < 0

        repaired = non_psd_matrix.ensure_psd()

        assert repaired.repaired
        assert repaired.min_eigenvalue() > -1e-10
        assert np.allclose(repaired.values, repaired.values.T)
        assert np.allclose(np.diag(repaired.values), 1.0)
        assert np.all(np.abs(repaired.values) <= 1.0 + 1e-12)
        L = repaired.cholesky_factor()
        assert np.allclose(L @ L.T, repaired.values)

    def test_generator_records_repair(self, non_psd_matrix):
        generator = CorrelatedScenarioGenerator(non_psd_matrix, seed=7)
        assert generator.repaired
        assert generator.n_factors == 3

    def test_empty_matrix(self):
        generator = CorrelatedScenarioGenerator(CorrelationMatrix([], np.eye(0)), seed=1)
        shocks = generator.draw_factor_shocks(generator.path_rng(0), n_years=3)
        assert shocks.shape == (3, 0)


# =============================================================================
# Correlated Draw Tests
# =============================================================================

class TestCorrelatedDraws:
    """Tests for correlated factor shocks."""

    def test_two_sector_empirical_correlation(self, two_sector_market):
        """100,000 one-year paths reproduce a 0.9 sector correlation within 0.02."""
        matrix = build_factor_correlation(two_sector_market, [Sector.RETAIL, Sector.HOSPITALITY])
        generator = CorrelatedScenarioGenerator(matrix, seed=2024)

        shocks = generator.draw_paths(100_000, n_years=1)
        volatility = np.array([0.20, 0.20])
        realised = shocks * volatility

        corr = empirical_correlation(realised)
        assert corr[0, 1] == pytest.approx(0.9, abs=0.02)
        assert realised[..., 0].std() == pytest.approx(0.20, abs=0.005)

    def test_factor_matrix_layout(self):
        market = MarketData()
        matrix = build_factor_correlation(market, [Sector.RETAIL], [PropertyType.COMMERCIAL, PropertyType.OFFICE])

        assert matrix.labels == [
            sector_label(Sector.RETAIL),
            collateral_label(PropertyType.COMMERCIAL),
            collateral_label(PropertyType.OFFICE),
        ]
        assert matrix.values[0, 1] == pytest.approx(0.75)
        assert matrix.values[1, 2] == pytest.approx(market.collateral_cross_correlation)

    def test_same_seed_same_draws(self, two_sector_market):
        matrix = build_factor_correlation(two_sector_market, [Sector.RETAIL, Sector.HOSPITALITY])
        a = CorrelatedScenarioGenerator(matrix, seed=11).draw_paths(50, 3)
        b = CorrelatedScenarioGenerator(matrix, seed=11).draw_paths(50, 3)

        np.testing.assert_array_equal(a, b)

    def test_paths_independent_of_block(self, two_sector_market):
        """Drawing paths 10..19 alone matches the same slice of a larger draw."""
        matrix = build_factor_correlation(two_sector_market, [Sector.RETAIL, Sector.HOSPITALITY])
        generator = CorrelatedScenarioGenerator(matrix, seed=3)

        full = generator.draw_paths(30, 2)
        block = generator.draw_paths(10, 2, start_path=10)

        np.testing.assert_array_equal(full[10:20], block)

    def test_idiosyncratic_streams_differ(self, two_sector_market):
        matrix = build_factor_correlation(two_sector_market, [Sector.RETAIL])
        generator = CorrelatedScenarioGenerator(matrix, seed=5)

        first = generator.draw_idiosyncratic(0, 0, 4)
        second = generator.draw_idiosyncratic(0, 1, 4)

        assert first.shape == (4, 3)
        assert not np.allclose(first, second)


# =============================================================================
# Shock Model Tests
# =============================================================================

class TestShockModels:
    """Tests for revenue and collateral shock calibration."""

    def test_single_sector_has_no_residual(self, two_sector_market):
        matrix = build_factor_correlation(two_sector_market, [Sector.RETAIL])
        model = RevenueShockModel.build(SectorExposure.single(Sector.RETAIL), two_sector_market, matrix, 0.15)

        assert model.loadings == (pytest.approx(0.20),)
        assert model.residual_volatility == pytest.approx(0.0, abs=1e-12)
        assert model.total_volatility == pytest.approx(0.20)

    def test_residual_tops_up_diversified_exposure(self, two_sector_market):
        matrix = build_factor_correlation(two_sector_market, [Sector.RETAIL, Sector.HOSPITALITY])
        exposure = SectorExposure({Sector.RETAIL: 0.5, Sector.HOSPITALITY: 0.5})
        model = RevenueShockModel.build(exposure, two_sector_market, matrix, 0.15)

        assert model.residual_volatility == pytest.approx(np.sqrt(0.04 - 0.038))
        assert model.total_volatility == pytest.approx(0.20)

    def test_empty_exposure_uses_aggregate_volatility(self, two_sector_market):
        matrix = build_factor_correlation(two_sector_market, [])
        model = RevenueShockModel.build(SectorExposure(), two_sector_market, matrix, 0.15)

        assert model.factor_indices == ()
        assert model.shock(np.zeros(0), 1.0) == pytest.approx(0.15)

    def test_collateral_without_property_type_is_degraded(self):
        market = MarketData()
        matrix = build_factor_correlation(market, [Sector.RETAIL])
        default = PropertyTypeParameters(0.02, 0.10)

        model = CollateralShockModel.build(None, market, matrix, default)

        assert model.degraded
        assert model.factor_index is None
        assert model.parameters == default

    def test_collateral_follows_its_factor(self):
        market = MarketData()
        matrix = build_factor_correlation(market, [Sector.RETAIL], [PropertyType.RESIDENTIAL])
        model = CollateralShockModel.build(PropertyType.RESIDENTIAL, market, matrix, PropertyTypeParameters(0.0, 0.1))

        assert not model.degraded
        assert model.shock(np.array([0.3, -1.2]), revenue_z=0.0, residual=0.0) == pytest.approx(-1.2)

    def test_gbm_step(self):
        assert gbm_step(100.0, 0.05, 0.0, 1.5) == pytest.approx(100.0 * np.exp(0.05))
        assert gbm_step(100.0, 0.0, 0.2, 0.0) == pytest.approx(100.0 * np.exp(-0.02))
