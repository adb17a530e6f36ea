"""
Factor Correlation Matrices
===========================

Joint correlation matrix over the systemic risk factors of a run: one
revenue factor per economic sector and one value factor per collateral
property type.

Before a matrix is factorised it is validated (square, symmetric, finite,
unit diagonal, entries within [-1, 1]). A matrix that is valid but not
positive semi-definite is repaired by clipping its eigenvalues to a small
floor and rescaling back to a unit diagonal; the repair is recorded on the
result. Singular matrices with no negative eigenvalue are kept unchanged.
A matrix that cannot be validated or repaired raises
:class:`InvalidCorrelationInput` and no path is simulated.

Example
-------
>>> matrix = CorrelationMatrix(["a", "b"], [[1.0, 0.9], [0.9, 1.0]])
>>> L = matrix.ensure_psd().cholesky_factor()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
from scipy import linalg

from .exceptions import InvalidCorrelationInput
from .market_data import MarketData, PropertyType, Sector

logger = logging.getLogger("LoanRisk.Correlation")

SECTOR_PREFIX = "sector:"
COLLATERAL_PREFIX = "collateral:"

# eigenvalues above -PSD_TOLERANCE count as non-negative
PSD_TOLERANCE = 1e-10


def sector_label(sector: Sector) -> str:
    return f"{SECTOR_PREFIX}{sector.value}"


def collateral_label(property_type: PropertyType) -> str:
    return f"{COLLATERAL_PREFIX}{property_type.value}"


@dataclass
class CorrelationMatrix:
    """
    Labelled correlation matrix.

    Attributes
    ----------
    labels : list of str
        Factor labels, one per row.
    values : np.ndarray
        Correlation coefficients, shape ``(n, n)``.
    repaired : bool
        True when the values came out of an eigenvalue repair.
    """

    labels: List[str]
    values: np.ndarray
    repaired: bool = False
    _validated: bool = field(default=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.labels = list(self.labels)
        self.values = np.array(self.values, dtype=float)

    @property
    def size(self) -> int:
        return len(self.labels)

    def index(self, label: str) -> int:
        try:
            return self.labels.index(label)
        except ValueError:
            raise KeyError(f"Factor '{label}' not in correlation matrix") from None

    def validate(self, tolerance: float = 1e-8) -> "CorrelationMatrix":
        """
        Check shape and entries; return self.

        Raises
        ------
        InvalidCorrelationInput
            On a non-square, non-symmetric or non-finite matrix, a
            diagonal other than one, entries outside [-1, 1], or labels
            that do not match the matrix size.
        """
        m = self.values
        if m.ndim != 2 or m.shape[0] != m.shape[1]:
            raise InvalidCorrelationInput(f"Correlation matrix must be square, got shape {m.shape}")
        if m.shape[0] != len(self.labels):
            raise InvalidCorrelationInput(
                f"{len(self.labels)} labels for a {m.shape[0]}x{m.shape[1]} correlation matrix"
            )
        if len(set(self.labels)) != len(self.labels):
            raise InvalidCorrelationInput("Correlation matrix labels must be unique")
        if not np.all(np.isfinite(m)):
            raise InvalidCorrelationInput("Correlation matrix contains non-finite entries")
        if not np.allclose(m, m.T, atol=tolerance):
            asym = float(np.max(np.abs(m - m.T)))
            raise InvalidCorrelationInput(f"Correlation matrix is not symmetric (max asymmetry {asym:.3g})")
        if not np.allclose(np.diag(m), 1.0, atol=tolerance):
            raise InvalidCorrelationInput("Correlation matrix diagonal must be 1")
        if np.any(np.abs(m) > 1.0 + tolerance):
            raise InvalidCorrelationInput("Correlation coefficients must lie in [-1, 1]")
        self._validated = True
        return self

    def min_eigenvalue(self) -> float:
        return float(linalg.eigvalsh(self.values)[0])

    def is_positive_definite(self) -> bool:
        if self.size == 0:
            return True
        try:
            linalg.cholesky(self.values, lower=True)
        except linalg.LinAlgError:
            return False
        return True

    def is_positive_semidefinite(self, tolerance: float = PSD_TOLERANCE) -> bool:
        if self.size == 0:
            return True
        return self.min_eigenvalue() >= -tolerance

    def ensure_psd(self, eigenvalue_floor: float = 1e-8, tolerance: float = PSD_TOLERANCE) -> "CorrelationMatrix":
        """
        Return a factorisable version of this matrix.

        A positive semi-definite matrix is returned as is, including singular
        ones such as a perfect correlation between two factors. Otherwise
        negative eigenvalues are raised to ``eigenvalue_floor``, the result
        is rescaled to a unit diagonal and returned with ``repaired=True``.

        Raises
        ------
        InvalidCorrelationInput
            If the matrix is malformed or still cannot be factorised after
            the repair.
        """
        if not self._validated:
            self.validate()
        if self.is_positive_definite() or self.is_positive_semidefinite(tolerance):
            return self

        eigenvalues, eigenvectors = linalg.eigh(self.values)
        clipped = np.maximum(eigenvalues, eigenvalue_floor)
        rebuilt = (eigenvectors * clipped) @ eigenvectors.T
        scale = np.sqrt(np.diag(rebuilt))
        rebuilt = rebuilt / np.outer(scale, scale)
        rebuilt = 0.5 * (rebuilt + rebuilt.T)
        np.fill_diagonal(rebuilt, 1.0)

        repaired = CorrelationMatrix(self.labels, rebuilt, repaired=True)
        if not repaired.is_positive_definite():
            raise InvalidCorrelationInput(
                f"Correlation matrix could not be repaired (min eigenvalue {eigenvalues[0]:.3g})"
            )
        repaired._validated = True
        logger.warning(
            "Correlation matrix was not positive definite (min eigenvalue %.4g); "
            "repaired by eigenvalue clipping, max adjustment %.4g",
            eigenvalues[0],
            float(np.max(np.abs(rebuilt - self.values))),
        )
        return repaired

    def cholesky_factor(self) -> np.ndarray:
        """
        Lower-triangular Cholesky factor ``L`` with ``L @ L.T == values``.

        A singular positive semi-definite matrix is factorised with a
        diagonal jitter just above its smallest eigenvalue, so the
        identity holds to within that jitter.

        Raises
        ------
        InvalidCorrelationInput
            If the matrix is not positive semi-definite.
        """
        if self.size == 0:
            return np.zeros((0, 0))
        try:
            return linalg.cholesky(self.values, lower=True)
        except linalg.LinAlgError as exc:
            min_eigenvalue = self.min_eigenvalue()
            if min_eigenvalue < -PSD_TOLERANCE:
                raise InvalidCorrelationInput(f"Cholesky factorisation failed: {exc}") from exc
            jitter = PSD_TOLERANCE - min(min_eigenvalue, 0.0)
            try:
                return linalg.cholesky(self.values + jitter * np.eye(self.size), lower=True)
            except linalg.LinAlgError as retry_exc:
                raise InvalidCorrelationInput(f"Cholesky factorisation failed: {retry_exc}") from retry_exc

    def submatrix(self, labels: Sequence[str]) -> np.ndarray:
        idx = [self.index(label) for label in labels]
        return self.values[np.ix_(idx, idx)]


def build_factor_correlation(
    market_data: MarketData,
    sectors: Sequence[Sector],
    property_types: Optional[Sequence[PropertyType]] = None,
) -> CorrelationMatrix:
    """
    Assemble the joint correlation matrix for a set of factors.

    Sector pairs use the sector correlation table, sector / collateral pairs
    the sector-collateral table, and distinct collateral classes the
    configured cross correlation.

    Parameters
    ----------
    market_data : MarketData
        Correlation tables and defaults.
    sectors : sequence of Sector
        Sector factors, in order.
    property_types : sequence of PropertyType, optional
        Collateral factors, in order, placed after the sectors.

    Returns
    -------
    CorrelationMatrix
        Validated, not yet repaired.
    """
    property_types = list(property_types or [])
    labels = [sector_label(s) for s in sectors] + [collateral_label(p) for p in property_types]
    n_sectors = len(sectors)
    m = np.eye(len(labels))

    for i, a in enumerate(sectors):
        for j in range(i + 1, n_sectors):
            m[i, j] = m[j, i] = market_data.sector_correlation(a, sectors[j])
        for k, prop in enumerate(property_types):
            col = n_sectors + k
            m[i, col] = m[col, i] = market_data.sector_collateral_correlation(a, prop)
    for k, a in enumerate(property_types):
        for l in range(k + 1, len(property_types)):
            i, j = n_sectors + k, n_sectors + l
            m[i, j] = m[j, i] = market_data.collateral_correlation(a, property_types[l])

    return CorrelationMatrix(labels, m).validate()
