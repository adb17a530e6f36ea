"""
Loan Duration Analytics
=======================

Interest-rate sensitivity of running loans and of a loan book:

- **Macaulay Duration**: present-value weighted average time to cash flow,
  discounted at the loan's own monthly rate. Level-payment loans with no
  remaining interest-only months use the annuity closed form
  ``D = (1 + r) / r - n / ((1 + r)^n - 1)`` (in months); other loans sum
  their remaining scheduled cash flows explicitly.
- **Modified Duration**: ``Macaulay / (1 + r)``, reported in years.
- **Convexity**: second-order sensitivity from the same cash flows.

The book figures are outstanding-balance weighted. Rate sensitivity is the
first-order estimate ``dPV = -D_mod * dr * PV`` for parallel shocks of
1%, 2% and 5%, with a convexity-adjusted estimate alongside.

Example
-------
>>> analyzer = DurationAnalyzer()
>>> report = analyzer.analyze([ActiveLoan("L1", terms, months_elapsed=24)])
>>> print(f"Book duration: {report.weighted_modified_duration:.2f} years")
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .amortization import AmortizationScheduler, LoanTerms, RedemptionType

logger = logging.getLogger("LoanRisk.Duration")

DEFAULT_RATE_SHOCKS: Tuple[float, ...] = (0.01, 0.02, 0.05)

DURATION_BUCKETS: Tuple[Tuple[str, float, float], ...] = (
    ("0-2", 0.0, 2.0),
    ("2-5", 2.0, 5.0),
    ("5-10", 5.0, 10.0),
    ("10-15", 10.0, 15.0),
    ("15-20", 15.0, 20.0),
    ("20-25", 20.0, 25.0),
    ("25+", 25.0, float("inf")),
)

_LEVEL_PAYMENT = (RedemptionType.ANNUITY, RedemptionType.BUILDING_DEPOT)


@dataclass(frozen=True)
class ActiveLoan:
    """
    A running loan to analyse.

    Attributes
    ----------
    loan_id : str
        Identifier.
    terms : LoanTerms
        Contract terms.
    months_elapsed : int
        Scheduled payments already made.
    """

    loan_id: str
    terms: LoanTerms
    months_elapsed: int = 0

    @property
    def remaining_months(self) -> int:
        return max(0, self.terms.tenor_months - self.months_elapsed)


@dataclass(frozen=True)
class LoanDuration:
    """Duration figures of one loan."""

    loan_id: str
    redemption_type: RedemptionType
    outstanding: float
    annual_rate: float
    remaining_months: int
    macaulay_duration: float
    modified_duration: float
    convexity: float

    @property
    def dv01(self) -> float:
        """Value change for a one basis point rise in rates."""
        return -self.modified_duration * 0.0001 * self.outstanding


@dataclass(frozen=True)
class RateSensitivity:
    """Estimated book value change for a parallel rate shock."""

    rate_shock: float
    value_change: float
    value_change_with_convexity: float
    percent_change: float


@dataclass
class DurationReport:
    """
    Duration analysis of a set of loans.

    Attributes
    ----------
    loans : list of LoanDuration
        Per-loan figures, excluding fully repaid loans.
    total_value : float
        Sum of outstanding balances.
    weighted_macaulay_duration, weighted_modified_duration : float
        Outstanding-weighted durations in years.
    weighted_convexity : float
        Outstanding-weighted convexity in years squared.
    average_yield : float
        Outstanding-weighted annual rate in percent.
    sensitivities : list of RateSensitivity
        Value changes at the configured shocks.
    dv01 : float
        Book value change for a one basis point rise.
    buckets : pd.DataFrame
        Loan count and value per modified-duration bucket.
    """

    loans: List[LoanDuration]
    total_value: float
    weighted_macaulay_duration: float
    weighted_modified_duration: float
    weighted_convexity: float
    average_yield: float
    sensitivities: List[RateSensitivity]
    dv01: float
    buckets: pd.DataFrame = field(repr=False)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(loan) for loan in self.loans])

    def summary(self) -> Dict:
        return {
            "loan_count": len(self.loans),
            "total_value": self.total_value,
            "weighted_macaulay_duration": self.weighted_macaulay_duration,
            "weighted_modified_duration": self.weighted_modified_duration,
            "weighted_convexity": self.weighted_convexity,
            "average_yield": self.average_yield,
            "dv01": self.dv01,
            "sensitivities": {
                f"{s.rate_shock:.0%}": s.value_change for s in self.sensitivities
            },
            "buckets": self.buckets["count"].to_dict(),
        }


def annuity_macaulay_months(monthly_rate: float, periods: int) -> float:
    """Macaulay duration in months of a level-payment stream."""
    if periods <= 0:
        return 0.0
    if monthly_rate == 0:
        return (periods + 1) / 2.0
    growth = (1.0 + monthly_rate) ** periods
    return (1.0 + monthly_rate) / monthly_rate - periods / (growth - 1.0)


class DurationAnalyzer:
    """
    Duration, convexity and rate sensitivity of running loans.

    Parameters
    ----------
    rate_shocks : sequence of float
        Parallel shocks as decimals (0.01 = 100 bp).
    scheduler : AmortizationScheduler, optional
        Schedule generator.
    """

    def __init__(
        self,
        rate_shocks: Sequence[float] = DEFAULT_RATE_SHOCKS,
        scheduler: Optional[AmortizationScheduler] = None,
    ) -> None:
        self.rate_shocks = tuple(rate_shocks)
        self.scheduler = scheduler or AmortizationScheduler()

    def remaining_cashflows(self, loan: ActiveLoan) -> np.ndarray:
        """Scheduled payments after ``months_elapsed``, in month order."""
        schedule = self.scheduler.generate(loan.terms)
        return np.array([e.payment for e in schedule[loan.months_elapsed:]])

    def loan_duration(self, loan: ActiveLoan) -> LoanDuration:
        """
        Duration figures of a single loan.

        Zero-rate loans and loans with no remaining months report the
        remaining tenor in years as both durations.
        """
        terms = loan.terms
        r = terms.monthly_rate
        n = loan.remaining_months
        outstanding = self.scheduler.outstanding_after(terms, loan.months_elapsed)

        if r == 0 or n == 0:
            years = n / 12.0
            return LoanDuration(
                loan_id=loan.loan_id,
                redemption_type=RedemptionType.parse(terms.redemption_type),
                outstanding=outstanding,
                annual_rate=terms.annual_rate,
                remaining_months=n,
                macaulay_duration=years,
                modified_duration=years,
                convexity=years ** 2,
            )

        flows = self.remaining_cashflows(loan)
        k = np.arange(1, len(flows) + 1, dtype=float)
        discount = (1.0 + r) ** -k
        pv = flows * discount
        price = float(pv.sum())

        io_left = max(0, terms.interest_only_months - loan.months_elapsed)
        if RedemptionType.parse(terms.redemption_type) in _LEVEL_PAYMENT and io_left == 0:
            macaulay_months = annuity_macaulay_months(r, n)
        else:
            macaulay_months = float((k * pv).sum() / price)
        convexity_months = float((k * (k + 1.0) * pv).sum() / (price * (1.0 + r) ** 2))

        return LoanDuration(
            loan_id=loan.loan_id,
            redemption_type=RedemptionType.parse(terms.redemption_type),
            outstanding=outstanding,
            annual_rate=terms.annual_rate,
            remaining_months=n,
            macaulay_duration=macaulay_months / 12.0,
            modified_duration=macaulay_months / (1.0 + r) / 12.0,
            convexity=convexity_months / 144.0,
        )

    def analyze(self, loans: Iterable[ActiveLoan]) -> DurationReport:
        """
        Duration report for a set of running loans.

        Parameters
        ----------
        loans : iterable of ActiveLoan
            Loans to include; fully repaid loans are skipped.

        Returns
        -------
        DurationReport
            Per-loan and book-level figures.
        """
        results = [self.loan_duration(loan) for loan in loans if loan.remaining_months > 0]
        total = float(sum(d.outstanding for d in results))

        if total > 0:
            weights = np.array([d.outstanding for d in results]) / total
            mac = float(weights @ [d.macaulay_duration for d in results])
            mod = float(weights @ [d.modified_duration for d in results])
            conv = float(weights @ [d.convexity for d in results])
            avg_yield = float(weights @ [d.annual_rate for d in results])
        else:
            mac = mod = conv = avg_yield = 0.0

        sensitivities = []
        for shock in self.rate_shocks:
            linear = -mod * shock * total
            curved = linear + 0.5 * conv * shock ** 2 * total
            sensitivities.append(
                RateSensitivity(
                    rate_shock=shock,
                    value_change=linear,
                    value_change_with_convexity=curved,
                    percent_change=linear / total if total > 0 else 0.0,
                )
            )

        report = DurationReport(
            loans=results,
            total_value=total,
            weighted_macaulay_duration=mac,
            weighted_modified_duration=mod,
            weighted_convexity=conv,
            average_yield=avg_yield,
            sensitivities=sensitivities,
            dv01=-mod * 0.0001 * total,
            buckets=self.bucket_distribution(results),
        )
        logger.info(
            "Duration analysis: %d loans, value %.2f, modified duration %.2f years",
            len(results),
            total,
            mod,
        )
        return report

    @staticmethod
    def bucket_distribution(durations: Sequence[LoanDuration]) -> pd.DataFrame:
        """Loan count and outstanding value per modified-duration bucket."""
        labels = [name for name, _, _ in DURATION_BUCKETS]
        edges = [lo for _, lo, _ in DURATION_BUCKETS] + [float("inf")]
        frame = pd.DataFrame(
            {
                "duration": pd.Series([d.modified_duration for d in durations], dtype=float),
                "value": pd.Series([d.outstanding for d in durations], dtype=float),
            }
        )
        frame["bucket"] = pd.cut(frame["duration"], bins=edges, labels=labels, right=False)
        grouped = frame.groupby("bucket", observed=False)
        return pd.DataFrame(
            {
                "count": grouped["value"].count().astype(int),
                "value": grouped["value"].sum(),
            }
        ).reindex(labels, fill_value=0)
