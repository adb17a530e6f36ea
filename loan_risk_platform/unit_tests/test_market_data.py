"""
Market Data Tests
=================

Tests for sector and property-type reference data, revenue category
mapping and sector exposure validation.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from loan_risk_platform.engine.exceptions import MissingMarketData
from loan_risk_platform.engine.market_data import (
    DEFAULT_SECTOR_COLLATERAL_CORRELATIONS,
    DEFAULT_SECTOR_PROFILES,
    MarketData,
    PropertyType,
    Sector,
    SectorExposure,
    sector_for_revenue_category,
)


class TestReferenceTables:
    """Default tables cover every enum member."""

    def test_every_sector_has_profile(self):
        assert set(DEFAULT_SECTOR_PROFILES) == set(Sector)

    def test_sector_collateral_table_complete(self):
        assert len(DEFAULT_SECTOR_COLLATERAL_CORRELATIONS) == len(Sector) * len(PropertyType)
        assert DEFAULT_SECTOR_COLLATERAL_CORRELATIONS[(Sector.AGRICULTURE, PropertyType.AGRICULTURAL)] == 0.90

    def test_sector_correlation_symmetric_lookup(self):
        market = MarketData()
        assert market.sector_correlation(Sector.RETAIL, Sector.MANUFACTURING) == 0.65
        assert market.sector_correlation(Sector.MANUFACTURING, Sector.RETAIL) == 0.65
        assert market.sector_correlation(Sector.RETAIL, Sector.RETAIL) == 1.0

    def test_missing_pair_uses_default(self):
        market = MarketData(sector_correlations={})
        assert market.sector_correlation(Sector.RETAIL, Sector.HEALTHCARE) == market.default_sector_correlation

    def test_missing_sector_profile(self):
        market = MarketData(sector_profiles={})
        with pytest.raises(MissingMarketData) as exc_info:
            market.sector_profile(Sector.RETAIL)
        assert exc_info.value.key == "Retail"

    def test_unspecified_property_type(self):
        with pytest.raises(MissingMarketData):
            MarketData().property_type_parameters(None)


class TestParsing:
    """Tests for enum parsing from external strings."""

    @pytest.mark.parametrize("text", ["RealEstate", "real estate", "real_estate"])
    def test_sector_parse(self, text):
        assert Sector.parse(text) is Sector.REAL_ESTATE

    @pytest.mark.parametrize("text", ["Mixed-Use", "mixed use", "MIXED_USE"])
    def test_property_type_parse(self, text):
        assert PropertyType.parse(text) is PropertyType.MIXED_USE

    def test_unknown_sector(self):
        with pytest.raises(MissingMarketData):
            Sector.parse("Mining")


class TestRevenueMapping:
    """Tests for revenue category to sector mapping."""

    def test_exact_match(self):
        assert sector_for_revenue_category("Rental Income") is Sector.REAL_ESTATE

    def test_case_insensitive_match(self):
        assert sector_for_revenue_category("saas revenue") is Sector.TECHNOLOGY

    def test_substring_match(self):
        assert sector_for_revenue_category("Monthly Software Revenue") is Sector.TECHNOLOGY

    def test_unknown_category(self):
        assert sector_for_revenue_category("Grants and Subsidies") is Sector.OTHER


class TestSectorExposure:
    """Tests for exposure validation and normalisation."""

    def test_small_drift_normalised(self):
        exposure = SectorExposure({"Retail": 0.5, "Technology": 0.5000001})
        assert sum(exposure.weights.values()) == pytest.approx(1.0, abs=1e-12)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            SectorExposure({"Retail": 0.5})

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError):
            SectorExposure({"Retail": 1.2, "Technology": -0.2})

    def test_zero_weights_dropped(self):
        exposure = SectorExposure({"Retail": 1.0, "Technology": 0.0})
        assert exposure.sectors == [Sector.RETAIL]

    def test_from_revenue_breakdown(self):
        exposure = SectorExposure.from_revenue_breakdown({"Rental Income": 300.0, "Retail Sales": 100.0})

        assert exposure.weight(Sector.REAL_ESTATE) == pytest.approx(0.75)
        assert exposure.weight(Sector.RETAIL) == pytest.approx(0.25)

    def test_empty_breakdown_maps_to_other(self):
        exposure = SectorExposure.from_revenue_breakdown({})
        assert exposure.sectors == [Sector.OTHER]

    def test_empty_exposure(self):
        assert SectorExposure().is_empty
