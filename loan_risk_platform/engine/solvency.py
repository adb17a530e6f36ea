"""
Solvency Tests
==============

Year-end default tests applied to every projected path-year:

1. **Negative equity**: projected equity below zero.
2. **Liquidity shortfall**: cash available in the year (opening liquid
   assets plus operating cash flow and disbursements) does not cover the
   scheduled interest and principal.
3. **Collateral shortfall**: outstanding secured debt exceeds effective
   collateral (post-haircut, post-subordination) by more than a configured
   fraction of the outstanding balance.

The evaluation is a pure function of one snapshot. Once a path defaults the
projector stops calling it for that path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from ..config import Settings, get_settings

logger = logging.getLogger("LoanRisk.Solvency")


class DefaultReason(str, Enum):
    """Test that flagged a default, in evaluation order."""

    NEGATIVE_EQUITY = "negative_equity"
    LIQUIDITY_SHORTFALL = "liquidity_shortfall"
    COLLATERAL_SHORTFALL = "collateral_shortfall"


@dataclass(frozen=True)
class SolvencyThresholds:
    """
    Configuration of the default tests.

    Attributes
    ----------
    collateral_shortfall_threshold : float
        Tolerated excess of secured outstanding over effective collateral,
        as a fraction of the outstanding (0.20 = 20%).
    check_negative_equity, check_liquidity, check_collateral_shortfall : bool
        Enable the individual tests.
    """

    collateral_shortfall_threshold: float = 0.20
    check_negative_equity: bool = True
    check_liquidity: bool = True
    check_collateral_shortfall: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SolvencyThresholds":
        cfg = settings or get_settings()
        return cls(
            collateral_shortfall_threshold=cfg.collateral_shortfall_threshold,
            check_negative_equity=cfg.check_negative_equity,
            check_liquidity=cfg.check_liquidity,
            check_collateral_shortfall=cfg.check_collateral_shortfall,
        )


@dataclass(frozen=True)
class SolvencySnapshot:
    """
    Figures the default tests need for one path-year.

    Attributes
    ----------
    year : int
        Simulation year.
    equity : float
        Year-end equity.
    cash_available : float
        Liquid assets available for debt service in the year.
    scheduled_debt_service : float
        Scheduled interest plus principal for the year.
    secured_outstanding : float
        Year-end balance of loans with collateral attached.
    effective_collateral : float
        Year-end effective value of that collateral.
    """

    year: int
    equity: float
    cash_available: float
    scheduled_debt_service: float
    secured_outstanding: float = 0.0
    effective_collateral: float = 0.0


@dataclass(frozen=True)
class SolvencyCheck:
    """Outcome of the default tests for one path-year."""

    is_default: bool
    reason: Optional[DefaultReason]
    triggered: Tuple[DefaultReason, ...] = ()
    collateral_coverage: Optional[float] = None


SOLVENT = SolvencyCheck(is_default=False, reason=None)


class SolvencyEvaluator:
    """
    Apply the default tests to projected snapshots.

    Parameters
    ----------
    thresholds : SolvencyThresholds, optional
        Test configuration; read from settings when omitted.
    """

    def __init__(self, thresholds: Optional[SolvencyThresholds] = None) -> None:
        self.thresholds = thresholds or SolvencyThresholds.from_settings()

    def evaluate(self, snapshot: SolvencySnapshot) -> SolvencyCheck:
        """
        Run the enabled tests.

        Returns
        -------
        SolvencyCheck
            ``reason`` is the first triggered test in
            :class:`DefaultReason` order; ``triggered`` lists all of them.
        """
        t = self.thresholds
        triggered = []

        if t.check_negative_equity and snapshot.equity < 0:
            triggered.append(DefaultReason.NEGATIVE_EQUITY)

        if t.check_liquidity and snapshot.scheduled_debt_service > 0:
            if snapshot.cash_available < snapshot.scheduled_debt_service:
                triggered.append(DefaultReason.LIQUIDITY_SHORTFALL)

        coverage = None
        if snapshot.secured_outstanding > 0:
            coverage = snapshot.effective_collateral / snapshot.secured_outstanding
            shortfall = snapshot.secured_outstanding - snapshot.effective_collateral
            limit = t.collateral_shortfall_threshold * snapshot.secured_outstanding
            if t.check_collateral_shortfall and shortfall > limit:
                triggered.append(DefaultReason.COLLATERAL_SHORTFALL)

        if not triggered:
            if coverage is None:
                return SOLVENT
            return SolvencyCheck(is_default=False, reason=None, collateral_coverage=coverage)

        logger.debug("Default in year %d: %s", snapshot.year, ", ".join(r.value for r in triggered))
        return SolvencyCheck(
            is_default=True,
            reason=triggered[0],
            triggered=tuple(triggered),
            collateral_coverage=coverage,
        )
