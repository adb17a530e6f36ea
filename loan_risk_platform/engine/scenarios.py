"""
Correlated Scenario Generation
==============================

Per-path random draws for the credit simulation:

- Systemic factor shocks: correlated standard normals, one per sector and
  collateral factor per simulated year, obtained as ``Z @ L.T`` with ``L``
  the Cholesky factor of the (repaired) factor correlation matrix.
- Entity revenue shocks: exposure-weighted, volatility-scaled sum of the
  sector factors plus an independent residual.
- Collateral values: geometric Brownian motion driven by the collateral
  factor of the property type.

Random streams
--------------
Every path owns its streams, derived from the master seed and the path
index with :class:`numpy.random.SeedSequence`. Stream 0 carries the
systemic factors and is shared by every entity on the path; stream
``entity_index + 1`` carries that entity's idiosyncratic draws. Results do
not depend on how paths are split across workers.

Author: Loan Risk Platform Development Team
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .correlation import CorrelationMatrix, collateral_label, sector_label
from .exceptions import MissingMarketData
from .market_data import MarketData, PropertyType, PropertyTypeParameters, SectorExposure

logger = logging.getLogger("LoanRisk.Scenarios")

# Idiosyncratic draw columns: revenue residual, cost shock, collateral residual
IDIO_REVENUE = 0
IDIO_COST = 1
IDIO_COLLATERAL = 2
N_IDIOSYNCRATIC = 3

_MAX_RESAMPLES = 3


def finite_normals(rng: np.random.Generator, shape: Tuple[int, ...]) -> np.ndarray:
    """
    Standard normals with any non-finite draw replaced.

    Non-finite values are redrawn from the same stream a bounded number of
    times and finally clamped to zero, so a path never aborts on a bad draw.
    """
    z = rng.standard_normal(shape)
    for _ in range(_MAX_RESAMPLES):
        bad = ~np.isfinite(z)
        if not bad.any():
            return z
        z[bad] = rng.standard_normal(int(bad.sum()))
    return np.nan_to_num(z, nan=0.0, posinf=0.0, neginf=0.0)


def gbm_step(value: float, expected_return: float, volatility: float, shock: float, dt: float = 1.0) -> float:
    """One lognormal step: ``V * exp((mu - sigma^2 / 2) dt + sigma sqrt(dt) z)``."""
    drift = (expected_return - 0.5 * volatility ** 2) * dt
    return value * math.exp(drift + volatility * math.sqrt(dt) * shock)


class CorrelatedScenarioGenerator:
    """
    Correlated systemic shocks for all paths of a run.

    Parameters
    ----------
    correlation : CorrelationMatrix
        Factor correlation; validated and, if needed, repaired on
        construction.
    seed : int
        Master seed.
    eigenvalue_floor : float
        Floor used by the eigenvalue repair.

    Raises
    ------
    InvalidCorrelationInput
        If the matrix is malformed or unrepairable.
    """

    def __init__(self, correlation: CorrelationMatrix, seed: int, eigenvalue_floor: float = 1e-8) -> None:
        self.correlation = correlation.ensure_psd(eigenvalue_floor)
        self.cholesky = self.correlation.cholesky_factor()
        self.seed = int(seed)

    @property
    def n_factors(self) -> int:
        return self.correlation.size

    @property
    def repaired(self) -> bool:
        return self.correlation.repaired

    def path_rng(self, path_index: int, stream: int = 0) -> np.random.Generator:
        """Independent generator for one path and stream."""
        spawn_key = (path_index,) if stream == 0 else (path_index, stream)
        return np.random.default_rng(np.random.SeedSequence(self.seed, spawn_key=spawn_key))

    def draw_factor_shocks(self, rng: np.random.Generator, n_years: int) -> np.ndarray:
        """
        Correlated standard normals for one path.

        Returns
        -------
        np.ndarray
            Shape ``(n_years, n_factors)``.
        """
        independent = finite_normals(rng, (n_years, self.n_factors))
        return independent @ self.cholesky.T

    def draw_paths(self, n_paths: int, n_years: int, start_path: int = 0) -> np.ndarray:
        """
        Systemic shocks for a block of paths.

        Returns
        -------
        np.ndarray
            Shape ``(n_paths, n_years, n_factors)``.
        """
        shocks = np.empty((n_paths, n_years, self.n_factors))
        for i in range(n_paths):
            shocks[i] = self.draw_factor_shocks(self.path_rng(start_path + i), n_years)
        return shocks

    def draw_idiosyncratic(self, path_index: int, entity_index: int, n_years: int) -> np.ndarray:
        """
        Independent draws for one entity on one path.

        Returns
        -------
        np.ndarray
            Shape ``(n_years, 3)``: revenue residual, cost shock and
            collateral residual.
        """
        rng = self.path_rng(path_index, entity_index + 1)
        return finite_normals(rng, (n_years, N_IDIOSYNCRATIC))


@dataclass(frozen=True)
class RevenueShockModel:
    """
    Map factor shocks to one entity's revenue shock.

    ``shock = sum_s(w_s * sigma_s * z_s) + residual_volatility * eps``.

    Attributes
    ----------
    factor_indices : tuple of int
        Positions of the entity's sector factors in the factor vector.
    loadings : tuple of float
        ``w_s * sigma_s`` per sector factor.
    residual_volatility : float
        Volatility of the independent residual.
    total_volatility : float
        Target standard deviation of the shock.
    """

    factor_indices: Tuple[int, ...]
    loadings: Tuple[float, ...]
    residual_volatility: float
    total_volatility: float

    @classmethod
    def build(
        cls,
        exposure: SectorExposure,
        market_data: MarketData,
        correlation: CorrelationMatrix,
        aggregate_volatility: float,
        residual_volatility: Optional[float] = None,
    ) -> "RevenueShockModel":
        """
        Calibrate loadings and residual for an exposure.

        The residual variance tops the systematic variance up to the
        squared exposure-weighted sector volatility, unless
        ``residual_volatility`` overrides it. An empty exposure is driven by
        the residual alone at ``aggregate_volatility``.
        """
        if exposure.is_empty:
            vol = aggregate_volatility if residual_volatility is None else residual_volatility
            return cls((), (), float(vol), float(vol))

        sectors = exposure.sectors
        labels = [sector_label(s) for s in sectors]
        indices = tuple(correlation.index(label) for label in labels)
        volatilities = []
        for s in sectors:
            try:
                volatilities.append(market_data.sector_profile(s).volatility)
            except MissingMarketData as exc:
                logger.warning("%s; using aggregate revenue volatility", exc)
                volatilities.append(aggregate_volatility)
        loadings = np.array([exposure.weight(s) * v for s, v in zip(sectors, volatilities)])
        sub = correlation.submatrix(labels)
        systematic_var = float(loadings @ sub @ loadings)
        target = float(loadings.sum())
        if residual_volatility is None:
            residual_volatility = math.sqrt(max(0.0, target ** 2 - systematic_var))
            total = target
        else:
            total = math.sqrt(systematic_var + residual_volatility ** 2)
        return cls(indices, tuple(float(x) for x in loadings), float(residual_volatility), total)

    def shock(self, factors: np.ndarray, residual: float) -> float:
        systematic = sum(l * factors[i] for i, l in zip(self.factor_indices, self.loadings))
        return float(systematic + self.residual_volatility * residual)

    def standardized(self, factors: np.ndarray, residual: float) -> float:
        """Revenue shock scaled to unit variance."""
        if self.total_volatility <= 0:
            return 0.0
        return self.shock(factors, residual) / self.total_volatility


@dataclass(frozen=True)
class CollateralShockModel:
    """
    Map factor shocks to one collateral item's value shock.

    With a known property type the collateral follows its own factor and
    parameters. Without one it uses default parameters and a shock blending
    the entity's standardized revenue shock with an independent residual at
    the default sector-collateral correlation.
    """

    factor_index: Optional[int]
    parameters: PropertyTypeParameters
    fallback_correlation: float
    degraded: bool = False

    @classmethod
    def build(
        cls,
        property_type: Optional[PropertyType],
        market_data: MarketData,
        correlation: CorrelationMatrix,
        default_parameters: PropertyTypeParameters,
    ) -> "CollateralShockModel":
        try:
            params = market_data.property_type_parameters(property_type)
        except MissingMarketData as exc:
            logger.warning("%s; using default collateral return/volatility", exc)
            return cls(None, default_parameters, market_data.default_sector_collateral_correlation, True)
        return cls(
            correlation.index(collateral_label(property_type)),
            params,
            market_data.default_sector_collateral_correlation,
        )

    def shock(self, factors: np.ndarray, revenue_z: float, residual: float) -> float:
        if self.factor_index is not None:
            return float(factors[self.factor_index])
        rho = self.fallback_correlation
        return float(rho * revenue_z + math.sqrt(max(0.0, 1.0 - rho ** 2)) * residual)

    def step(self, value: float, factors: np.ndarray, revenue_z: float, residual: float) -> float:
        z = self.shock(factors, revenue_z, residual)
        return gbm_step(value, self.parameters.expected_return, self.parameters.volatility, z)


def empirical_correlation(shocks: np.ndarray) -> np.ndarray:
    """Sample correlation of factor shocks stacked over paths and years."""
    flat = shocks.reshape(-1, shocks.shape[-1])
    return np.corrcoef(flat, rowvar=False)

