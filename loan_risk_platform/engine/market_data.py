"""
Sector and Collateral Market Data
=================================

Reference data consumed by scenario generation:

1. Economic sector taxonomy with default volatility and expected growth
2. Collateral property types with expected return and volatility
3. Default sector-sector and sector-collateral correlation tables
4. Revenue-category to sector mapping used to derive sector exposures

All lookups resolve to fully typed in-memory values before a simulation
starts. A lookup that finds nothing raises :class:`MissingMarketData`; callers
recover with portfolio defaults and flag the run as degraded.

Author: Loan Risk Platform Development Team
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..config import Settings, get_settings
from .exceptions import MissingMarketData

logger = logging.getLogger("LoanRisk.MarketData")


class Sector(str, Enum):
    """Economic sectors that carry a systemic revenue factor."""

    MANUFACTURING = "Manufacturing"
    RETAIL = "Retail"
    REAL_ESTATE = "RealEstate"
    HEALTHCARE = "Healthcare"
    TECHNOLOGY = "Technology"
    PROFESSIONAL_SERVICES = "ProfessionalServices"
    HOSPITALITY = "Hospitality"
    AGRICULTURE = "Agriculture"
    CONSTRUCTION = "Construction"
    FINANCIAL_SERVICES = "FinancialServices"
    TRANSPORTATION = "Transportation"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: "Sector | str") -> "Sector":
        if isinstance(value, cls):
            return value
        text = str(value).replace("_", "").replace(" ", "").lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise MissingMarketData(str(value), f"Unknown sector: {value!r}")


class PropertyType(str, Enum):
    """Collateral classes that carry a systemic value factor."""

    RESIDENTIAL = "Residential"
    COMMERCIAL = "Commercial"
    INDUSTRIAL = "Industrial"
    LAND = "Land"
    MIXED_USE = "Mixed-Use"
    AGRICULTURAL = "Agricultural"
    OFFICE = "Office"
    RETAIL_SPACE = "Retail Space"
    WAREHOUSE = "Warehouse"

    @classmethod
    def parse(cls, value: "PropertyType | str") -> "PropertyType":
        if isinstance(value, cls):
            return value
        text = str(value).replace("-", "").replace("_", "").replace(" ", "").lower()
        for member in cls:
            if member.value.replace("-", "").replace(" ", "").lower() == text:
                return member
        raise MissingMarketData(str(value), f"Unknown property type: {value!r}")


@dataclass(frozen=True)
class SectorProfile:
    """Annual revenue volatility and expected growth of a sector."""

    volatility: float
    expected_growth: float


@dataclass(frozen=True)
class PropertyTypeParameters:
    """Annual expected return and volatility of a collateral class."""

    expected_return: float
    volatility: float


# =============================================================================
# Default Reference Tables
# =============================================================================

DEFAULT_SECTOR_PROFILES: Dict[Sector, SectorProfile] = {
    Sector.MANUFACTURING: SectorProfile(0.15, 0.025),
    Sector.RETAIL: SectorProfile(0.20, 0.015),
    Sector.REAL_ESTATE: SectorProfile(0.12, 0.030),
    Sector.HEALTHCARE: SectorProfile(0.10, 0.035),
    Sector.TECHNOLOGY: SectorProfile(0.25, 0.060),
    Sector.PROFESSIONAL_SERVICES: SectorProfile(0.18, 0.025),
    Sector.HOSPITALITY: SectorProfile(0.30, 0.020),
    Sector.AGRICULTURE: SectorProfile(0.22, 0.010),
    Sector.CONSTRUCTION: SectorProfile(0.20, 0.020),
    Sector.FINANCIAL_SERVICES: SectorProfile(0.16, 0.025),
    Sector.TRANSPORTATION: SectorProfile(0.18, 0.020),
    Sector.OTHER: SectorProfile(0.15, 0.020),
}

_S = Sector
DEFAULT_SECTOR_CORRELATIONS: Dict[Tuple[Sector, Sector], float] = {
    (_S.MANUFACTURING, _S.RETAIL): 0.65,
    (_S.MANUFACTURING, _S.CONSTRUCTION): 0.70,
    (_S.MANUFACTURING, _S.TRANSPORTATION): 0.60,
    (_S.MANUFACTURING, _S.TECHNOLOGY): 0.55,
    (_S.MANUFACTURING, _S.REAL_ESTATE): 0.45,
    (_S.MANUFACTURING, _S.FINANCIAL_SERVICES): 0.50,
    (_S.MANUFACTURING, _S.PROFESSIONAL_SERVICES): 0.40,
    (_S.MANUFACTURING, _S.HEALTHCARE): 0.30,
    (_S.MANUFACTURING, _S.HOSPITALITY): 0.35,
    (_S.MANUFACTURING, _S.AGRICULTURE): 0.40,
    (_S.MANUFACTURING, _S.OTHER): 0.35,
    (_S.RETAIL, _S.HOSPITALITY): 0.75,
    (_S.RETAIL, _S.REAL_ESTATE): 0.60,
    (_S.RETAIL, _S.TRANSPORTATION): 0.55,
    (_S.RETAIL, _S.TECHNOLOGY): 0.50,
    (_S.RETAIL, _S.FINANCIAL_SERVICES): 0.55,
    (_S.RETAIL, _S.CONSTRUCTION): 0.50,
    (_S.RETAIL, _S.PROFESSIONAL_SERVICES): 0.45,
    (_S.RETAIL, _S.HEALTHCARE): 0.35,
    (_S.RETAIL, _S.AGRICULTURE): 0.40,
    (_S.RETAIL, _S.OTHER): 0.40,
    (_S.REAL_ESTATE, _S.CONSTRUCTION): 0.80,
    (_S.REAL_ESTATE, _S.FINANCIAL_SERVICES): 0.70,
    (_S.REAL_ESTATE, _S.HOSPITALITY): 0.65,
    (_S.REAL_ESTATE, _S.PROFESSIONAL_SERVICES): 0.50,
    (_S.REAL_ESTATE, _S.TECHNOLOGY): 0.45,
    (_S.REAL_ESTATE, _S.TRANSPORTATION): 0.40,
    (_S.REAL_ESTATE, _S.HEALTHCARE): 0.35,
    (_S.REAL_ESTATE, _S.AGRICULTURE): 0.30,
    (_S.REAL_ESTATE, _S.OTHER): 0.40,
    (_S.HEALTHCARE, _S.PROFESSIONAL_SERVICES): 0.50,
    (_S.HEALTHCARE, _S.TECHNOLOGY): 0.45,
    (_S.HEALTHCARE, _S.FINANCIAL_SERVICES): 0.40,
    (_S.HEALTHCARE, _S.HOSPITALITY): 0.25,
    (_S.HEALTHCARE, _S.CONSTRUCTION): 0.30,
    (_S.HEALTHCARE, _S.TRANSPORTATION): 0.35,
    (_S.HEALTHCARE, _S.AGRICULTURE): 0.25,
    (_S.HEALTHCARE, _S.OTHER): 0.30,
    (_S.TECHNOLOGY, _S.PROFESSIONAL_SERVICES): 0.70,
    (_S.TECHNOLOGY, _S.FINANCIAL_SERVICES): 0.65,
    (_S.TECHNOLOGY, _S.TRANSPORTATION): 0.55,
    (_S.TECHNOLOGY, _S.CONSTRUCTION): 0.45,
    (_S.TECHNOLOGY, _S.HOSPITALITY): 0.50,
    (_S.TECHNOLOGY, _S.AGRICULTURE): 0.35,
    (_S.TECHNOLOGY, _S.OTHER): 0.45,
    (_S.PROFESSIONAL_SERVICES, _S.FINANCIAL_SERVICES): 0.75,
    (_S.PROFESSIONAL_SERVICES, _S.CONSTRUCTION): 0.50,
    (_S.PROFESSIONAL_SERVICES, _S.HOSPITALITY): 0.45,
    (_S.PROFESSIONAL_SERVICES, _S.TRANSPORTATION): 0.45,
    (_S.PROFESSIONAL_SERVICES, _S.AGRICULTURE): 0.35,
    (_S.PROFESSIONAL_SERVICES, _S.OTHER): 0.40,
    (_S.HOSPITALITY, _S.TRANSPORTATION): 0.70,
    (_S.HOSPITALITY, _S.CONSTRUCTION): 0.55,
    (_S.HOSPITALITY, _S.FINANCIAL_SERVICES): 0.60,
    (_S.HOSPITALITY, _S.AGRICULTURE): 0.45,
    (_S.HOSPITALITY, _S.OTHER): 0.45,
    (_S.AGRICULTURE, _S.TRANSPORTATION): 0.55,
    (_S.AGRICULTURE, _S.CONSTRUCTION): 0.40,
    (_S.AGRICULTURE, _S.FINANCIAL_SERVICES): 0.45,
    (_S.AGRICULTURE, _S.OTHER): 0.35,
    (_S.CONSTRUCTION, _S.TRANSPORTATION): 0.65,
    (_S.CONSTRUCTION, _S.FINANCIAL_SERVICES): 0.60,
    (_S.CONSTRUCTION, _S.OTHER): 0.45,
    (_S.FINANCIAL_SERVICES, _S.TRANSPORTATION): 0.55,
    (_S.FINANCIAL_SERVICES, _S.OTHER): 0.45,
    (_S.TRANSPORTATION, _S.OTHER): 0.40,
}

_P = PropertyType
# Row order: Residential, Commercial, Industrial, Land, Mixed-Use,
# Agricultural, Office, Retail Space, Warehouse
_COLLATERAL_ROWS: Dict[Sector, Tuple[float, ...]] = {
    _S.MANUFACTURING: (0.30, 0.50, 0.70, 0.45, 0.45, 0.25, 0.40, 0.35, 0.65),
    _S.RETAIL: (0.50, 0.75, 0.35, 0.40, 0.70, 0.20, 0.45, 0.85, 0.40),
    _S.REAL_ESTATE: (0.80, 0.80, 0.65, 0.75, 0.85, 0.55, 0.75, 0.70, 0.60),
    _S.HEALTHCARE: (0.30, 0.50, 0.20, 0.25, 0.50, 0.15, 0.55, 0.25, 0.20),
    _S.TECHNOLOGY: (0.35, 0.60, 0.45, 0.30, 0.65, 0.15, 0.75, 0.30, 0.40),
    _S.PROFESSIONAL_SERVICES: (0.35, 0.65, 0.30, 0.30, 0.60, 0.20, 0.80, 0.30, 0.25),
    _S.HOSPITALITY: (0.60, 0.85, 0.25, 0.50, 0.75, 0.30, 0.45, 0.65, 0.25),
    _S.AGRICULTURE: (0.25, 0.25, 0.35, 0.70, 0.25, 0.90, 0.20, 0.20, 0.40),
    _S.CONSTRUCTION: (0.75, 0.75, 0.70, 0.70, 0.80, 0.50, 0.70, 0.65, 0.65),
    _S.FINANCIAL_SERVICES: (0.50, 0.75, 0.40, 0.45, 0.65, 0.35, 0.70, 0.45, 0.35),
    _S.TRANSPORTATION: (0.35, 0.55, 0.70, 0.50, 0.45, 0.40, 0.40, 0.45, 0.75),
    _S.OTHER: (0.30, 0.40, 0.35, 0.35, 0.40, 0.25, 0.35, 0.30, 0.30),
}
DEFAULT_SECTOR_COLLATERAL_CORRELATIONS: Dict[Tuple[Sector, PropertyType], float] = {
    (sector, prop): value
    for sector, row in _COLLATERAL_ROWS.items()
    for prop, value in zip(PropertyType, row)
}

REVENUE_CATEGORY_SECTORS: Dict[str, Sector] = {
    "Product Sales": _S.MANUFACTURING,
    "Manufacturing Revenue": _S.MANUFACTURING,
    "Production Income": _S.MANUFACTURING,
    "Goods Sold": _S.MANUFACTURING,
    "Retail Sales": _S.RETAIL,
    "Wholesale Revenue": _S.RETAIL,
    "Store Sales": _S.RETAIL,
    "E-commerce Revenue": _S.RETAIL,
    "Rental Income": _S.REAL_ESTATE,
    "Property Revenue": _S.REAL_ESTATE,
    "Real Estate Income": _S.REAL_ESTATE,
    "Lease Income": _S.REAL_ESTATE,
    "Healthcare Services": _S.HEALTHCARE,
    "Medical Revenue": _S.HEALTHCARE,
    "Patient Services": _S.HEALTHCARE,
    "Clinical Income": _S.HEALTHCARE,
    "Software Revenue": _S.TECHNOLOGY,
    "Technology Services": _S.TECHNOLOGY,
    "IT Services": _S.TECHNOLOGY,
    "SaaS Revenue": _S.TECHNOLOGY,
    "Licensing Revenue": _S.TECHNOLOGY,
    "Consulting Revenue": _S.PROFESSIONAL_SERVICES,
    "Advisory Services": _S.PROFESSIONAL_SERVICES,
    "Professional Fees": _S.PROFESSIONAL_SERVICES,
    "Service Revenue": _S.PROFESSIONAL_SERVICES,
    "Hotel Revenue": _S.HOSPITALITY,
    "Restaurant Sales": _S.HOSPITALITY,
    "Hospitality Income": _S.HOSPITALITY,
    "Tourism Revenue": _S.HOSPITALITY,
    "Event Revenue": _S.HOSPITALITY,
    "Agricultural Sales": _S.AGRICULTURE,
    "Farm Revenue": _S.AGRICULTURE,
    "Crop Sales": _S.AGRICULTURE,
    "Livestock Revenue": _S.AGRICULTURE,
    "Construction Revenue": _S.CONSTRUCTION,
    "Project Revenue": _S.CONSTRUCTION,
    "Building Services": _S.CONSTRUCTION,
    "Contracting Revenue": _S.CONSTRUCTION,
    "Financial Services": _S.FINANCIAL_SERVICES,
    "Investment Income": _S.FINANCIAL_SERVICES,
    "Banking Revenue": _S.FINANCIAL_SERVICES,
    "Interest Income": _S.FINANCIAL_SERVICES,
    "Transportation Revenue": _S.TRANSPORTATION,
    "Logistics Services": _S.TRANSPORTATION,
    "Freight Revenue": _S.TRANSPORTATION,
    "Delivery Services": _S.TRANSPORTATION,
    "Other Revenue": _S.OTHER,
    "Miscellaneous": _S.OTHER,
    "Other Income": _S.OTHER,
}


def sector_for_revenue_category(category: str) -> Sector:
    """
    Map a revenue line item to a sector.

    Tries an exact match, then a case-insensitive match, then a substring
    match in either direction; anything else maps to ``Sector.OTHER``.
    """
    if category in REVENUE_CATEGORY_SECTORS:
        return REVENUE_CATEGORY_SECTORS[category]
    lowered = category.strip().lower()
    for name, sector in REVENUE_CATEGORY_SECTORS.items():
        if name.lower() == lowered:
            return sector
    for name, sector in REVENUE_CATEGORY_SECTORS.items():
        key = name.lower()
        if lowered and (key in lowered or lowered in key):
            return sector
    return Sector.OTHER


# =============================================================================
# Sector Exposure
# =============================================================================


@dataclass(frozen=True)
class SectorExposure:
    """
    Share of an entity's revenue attributed to each sector.

    Weights are non-negative and sum to one. Rounding drift up to
    ``tolerance`` is normalised away; anything larger is rejected. An empty
    exposure means no breakdown is known and the entity is driven by a
    single aggregate revenue volatility.
    """

    weights: Mapping[Sector, float] = field(default_factory=dict)

    TOLERANCE = 1e-6

    def __post_init__(self) -> None:
        parsed: Dict[Sector, float] = {}
        for key, weight in dict(self.weights).items():
            weight = float(weight)
            if weight < 0:
                raise ValueError(f"Negative sector weight for {key}: {weight}")
            if weight == 0:
                continue
            sector = Sector.parse(key)
            parsed[sector] = parsed.get(sector, 0.0) + weight
        total = sum(parsed.values())
        if parsed and abs(total - 1.0) > self.TOLERANCE:
            raise ValueError(f"Sector weights must sum to 1, got {total:.6f}")
        if parsed:
            parsed = {s: w / total for s, w in parsed.items()}
        object.__setattr__(self, "weights", parsed)

    @property
    def is_empty(self) -> bool:
        return not self.weights

    @property
    def sectors(self) -> List[Sector]:
        """Sectors in canonical enum order."""
        return [s for s in Sector if s in self.weights]

    def weight(self, sector: Sector) -> float:
        return self.weights.get(sector, 0.0)

    @classmethod
    def single(cls, sector: "Sector | str") -> "SectorExposure":
        return cls({Sector.parse(sector): 1.0})

    @classmethod
    def from_revenue_breakdown(cls, breakdown: Mapping[str, float]) -> "SectorExposure":
        """
        Derive exposure from revenue amounts per category.

        Parameters
        ----------
        breakdown : Mapping[str, float]
            Revenue amount per revenue category (e.g. ``"Rental Income"``).

        Returns
        -------
        SectorExposure
            Weights proportional to revenue; an empty or all-zero breakdown
            maps entirely to ``Sector.OTHER``.
        """
        totals: Dict[Sector, float] = {}
        for category, amount in breakdown.items():
            if amount is None or amount <= 0:
                continue
            sector = sector_for_revenue_category(category)
            totals[sector] = totals.get(sector, 0.0) + float(amount)
        grand_total = sum(totals.values())
        if grand_total <= 0:
            return cls({Sector.OTHER: 1.0})
        return cls({s: v / grand_total for s, v in totals.items()})


# =============================================================================
# Market Data Catalogue
# =============================================================================


class MarketData:
    """
    Resolved sector and collateral reference data for one run.

    Parameters
    ----------
    sector_profiles : dict, optional
        Profile per sector; defaults to :data:`DEFAULT_SECTOR_PROFILES`.
    property_parameters : dict, optional
        Return and volatility per property type. When omitted every property
        type uses the configured collateral defaults.
    sector_correlations : dict, optional
        Pairwise sector correlations; missing pairs use
        ``default_sector_correlation``.
    sector_collateral_correlations : dict, optional
        Sector / property-type correlations; missing pairs use
        ``default_sector_collateral_correlation``.
    settings : Settings, optional
        Source of defaults.
    """

    def __init__(
        self,
        sector_profiles: Optional[Mapping[Sector, SectorProfile]] = None,
        property_parameters: Optional[Mapping[PropertyType, PropertyTypeParameters]] = None,
        sector_correlations: Optional[Mapping[Tuple[Sector, Sector], float]] = None,
        sector_collateral_correlations: Optional[Mapping[Tuple[Sector, PropertyType], float]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        cfg = settings or get_settings()
        self.sector_profiles: Dict[Sector, SectorProfile] = dict(
            DEFAULT_SECTOR_PROFILES if sector_profiles is None else sector_profiles
        )
        if property_parameters is None:
            default = PropertyTypeParameters(cfg.collateral_return, cfg.collateral_volatility)
            property_parameters = {p: default for p in PropertyType}
        self.property_parameters: Dict[PropertyType, PropertyTypeParameters] = dict(property_parameters)
        self.sector_correlations = dict(
            DEFAULT_SECTOR_CORRELATIONS if sector_correlations is None else sector_correlations
        )
        self.sector_collateral_correlations = dict(
            DEFAULT_SECTOR_COLLATERAL_CORRELATIONS
            if sector_collateral_correlations is None
            else sector_collateral_correlations
        )
        self.default_sector_correlation = cfg.default_sector_correlation
        self.default_sector_collateral_correlation = cfg.default_sector_collateral_correlation
        self.collateral_cross_correlation = cfg.collateral_cross_correlation

    def sector_profile(self, sector: Sector) -> SectorProfile:
        """
        Raises
        ------
        MissingMarketData
            If the sector has no profile.
        """
        try:
            return self.sector_profiles[sector]
        except KeyError:
            raise MissingMarketData(sector.value) from None

    def property_type_parameters(self, property_type: Optional[PropertyType]) -> PropertyTypeParameters:
        """
        Raises
        ------
        MissingMarketData
            If the property type is unknown or has no parameters.
        """
        if property_type is None:
            raise MissingMarketData("<unspecified>", "Collateral has no property type")
        try:
            return self.property_parameters[property_type]
        except KeyError:
            raise MissingMarketData(property_type.value) from None

    def sector_correlation(self, a: Sector, b: Sector) -> float:
        if a == b:
            return 1.0
        value = self.sector_correlations.get((a, b))
        if value is None:
            value = self.sector_correlations.get((b, a), self.default_sector_correlation)
        return float(value)

    def sector_collateral_correlation(self, sector: Sector, property_type: PropertyType) -> float:
        return float(
            self.sector_collateral_correlations.get(
                (sector, property_type), self.default_sector_collateral_correlation
            )
        )

    def collateral_correlation(self, a: PropertyType, b: PropertyType) -> float:
        return 1.0 if a == b else float(self.collateral_cross_correlation)


def resolve_sectors(sectors: Iterable[Sector]) -> List[Sector]:
    """Distinct sectors in canonical enum order."""
    wanted = set(sectors)
    return [s for s in Sector if s in wanted]


def resolve_property_types(types: Iterable[Optional[PropertyType]]) -> List[PropertyType]:
    """Distinct, non-empty property types in canonical enum order."""
    wanted = {t for t in types if t is not None}
    return [p for p in PropertyType if p in wanted]
