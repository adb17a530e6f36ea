"""
Loan Amortization Schedules
===========================

Month-by-month interest, principal and balance schedules for the supported
redemption conventions:

- **Annuity**: constant total payment after any interest-only window.
- **Linear**: constant principal, interest on the declining balance.
- **Bullet**: interest every month, full principal in the final month.
- **BuildingDepot**: annuity amortization of the amount actually drawn on a
  drawdown facility.

Rates on :class:`LoanTerms` are annual nominal percentages. The monthly rate
is ``annual / 12 / 100``. Amounts are kept at full precision through the
schedule; rounding to cents happens only at presentation time.

The schedule also feeds the simulation engine through
:meth:`AmortizationScheduler.aggregate_yearly`, which folds loan months onto
simulation years for loans that are already running or that start during
the simulated horizon.

Example
-------
>>> from loan_risk_platform.engine.amortization import (
...     AmortizationScheduler, LoanTerms, RedemptionType,
... )
>>> terms = LoanTerms(100_000, 6.0, 360, redemption_type=RedemptionType.ANNUITY)
>>> schedule = AmortizationScheduler().generate(terms)
>>> round(schedule[0].interest, 2), round(schedule[0].principal, 2)
(500.0, 99.55)
"""

from __future__ import annotations

import logging
import math
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

import pandas as pd

from .exceptions import InvalidLoanTerms

logger = logging.getLogger("LoanRisk.Amortization")


class RedemptionType(str, Enum):
    """Supported redemption conventions."""

    ANNUITY = "Annuity"
    LINEAR = "Linear"
    BULLET = "Bullet"
    BUILDING_DEPOT = "BuildingDepot"

    @classmethod
    def parse(cls, value: "RedemptionType | str") -> "RedemptionType":
        """
        Resolve a convention from an enum member or a case-insensitive name.

        Raises
        ------
        InvalidLoanTerms
            If the name matches no convention.
        """
        if isinstance(value, cls):
            return value
        text = str(value).replace("_", "").replace(" ", "").lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise InvalidLoanTerms(f"Unknown redemption type: {value!r}", field="redemption_type")


@dataclass(frozen=True)
class LoanTerms:
    """
    Contractual terms of a single loan.

    Attributes
    ----------
    principal : float
        Contract amount.
    annual_rate : float
        Annual nominal rate in percent (6.0 = 6%).
    tenor_months : int
        Total loan duration in months.
    interest_only_months : int
        Leading months in which only interest is paid.
    redemption_type : RedemptionType
        Amortization convention. Names are parsed case-insensitively on
        construction; an unknown name raises ``InvalidLoanTerms``.
    amount_drawn : float, optional
        Drawn amount of a building-depot facility. Required for that
        convention and ignored by the others.
    """

    principal: float
    annual_rate: float
    tenor_months: int
    interest_only_months: int = 0
    redemption_type: RedemptionType = RedemptionType.ANNUITY
    amount_drawn: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "redemption_type", RedemptionType.parse(self.redemption_type))
        # whole-valued floats (e.g. from JSON) are accepted as month counts
        for name in ("tenor_months", "interest_only_months"):
            value = getattr(self, name)
            if isinstance(value, float) and value.is_integer():
                object.__setattr__(self, name, int(value))

    @property
    def monthly_rate(self) -> float:
        """Monthly rate as a decimal."""
        return self.annual_rate / 12.0 / 100.0

    @property
    def basis(self) -> float:
        """Amount that accrues interest and amortizes."""
        if self.redemption_type == RedemptionType.BUILDING_DEPOT:
            return float(self.amount_drawn or 0.0)
        return float(self.principal)

    @property
    def amortizing_months(self) -> int:
        """Number of months after the interest-only window."""
        return self.tenor_months - self.interest_only_months

    def validate(self) -> "LoanTerms":
        """
        Check the terms and return them unchanged.

        Raises
        ------
        InvalidLoanTerms
            If any term is outside its valid range.
        """
        for name in ("tenor_months", "interest_only_months"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                raise InvalidLoanTerms(f"{name} must be a whole number of months, got {value!r}", field=name)
        if self.tenor_months <= 0:
            raise InvalidLoanTerms(f"Tenor must be positive, got {self.tenor_months}", field="tenor_months")
        if not math.isfinite(self.annual_rate) or self.annual_rate < 0:
            raise InvalidLoanTerms(f"Rate must be a non-negative number, got {self.annual_rate}", field="annual_rate")
        if not math.isfinite(self.principal) or self.principal <= 0:
            raise InvalidLoanTerms(f"Principal must be positive, got {self.principal}", field="principal")
        if self.interest_only_months < 0:
            raise InvalidLoanTerms("Interest-only months cannot be negative", field="interest_only_months")
        if self.interest_only_months >= self.tenor_months:
            raise InvalidLoanTerms(
                f"Interest-only months ({self.interest_only_months}) must be shorter "
                f"than the tenor ({self.tenor_months})",
                field="interest_only_months",
            )
        if self.redemption_type == RedemptionType.BUILDING_DEPOT:
            if self.amount_drawn is None or not math.isfinite(self.amount_drawn) or self.amount_drawn <= 0:
                raise InvalidLoanTerms(
                    "BuildingDepot loans require a positive amount drawn", field="amount_drawn"
                )
        return self


@dataclass(frozen=True)
class ScheduleEntry:
    """
    One month of a loan schedule.

    Attributes
    ----------
    month : int
        Month index, 1-based.
    interest : float
        Interest component of the payment.
    principal : float
        Principal component of the payment.
    remaining_balance : float
        Balance after the payment.
    """

    month: int
    interest: float
    principal: float
    remaining_balance: float

    @property
    def payment(self) -> float:
        """Total payment for the month."""
        return self.interest + self.principal

    def rounded(self, decimals: int = 2) -> "ScheduleEntry":
        """Return a copy rounded for presentation."""
        return ScheduleEntry(
            month=self.month,
            interest=round(self.interest, decimals),
            principal=round(self.principal, decimals),
            remaining_balance=round(self.remaining_balance, decimals),
        )


@dataclass(frozen=True)
class YearlyLoanPayment:
    """
    Loan cash flows folded onto one simulation year.

    Attributes
    ----------
    year : int
        Simulation year, 1-based.
    interest : float
        Interest due in the year.
    principal : float
        Principal due in the year.
    disbursement : float
        Amount paid out to the borrower in the year (loans that start
        during the horizon).
    outstanding : float
        Balance at the end of the year.
    """

    year: int
    interest: float
    principal: float
    disbursement: float
    outstanding: float

    @property
    def debt_service(self) -> float:
        return self.interest + self.principal


def annuity_payment(balance: float, monthly_rate: float, periods: int) -> float:
    """
    Level payment that amortizes ``balance`` over ``periods`` months.

    A zero rate gives straight-line repayment.
    """
    if periods <= 0:
        return balance
    if monthly_rate == 0:
        return balance / periods
    return balance * monthly_rate / (1.0 - (1.0 + monthly_rate) ** -periods)


# =============================================================================
# Convention Schedules
# =============================================================================


def _annuity_schedule(terms: LoanTerms) -> List[ScheduleEntry]:
    rate = terms.monthly_rate
    balance = terms.basis
    payment = annuity_payment(balance, rate, terms.amortizing_months)

    entries: List[ScheduleEntry] = []
    for month in range(1, terms.tenor_months + 1):
        interest = balance * rate
        if month <= terms.interest_only_months:
            principal = 0.0
        elif month == terms.tenor_months:
            principal = balance
        else:
            principal = min(max(payment - interest, 0.0), balance)
        balance = 0.0 if month == terms.tenor_months else balance - principal
        entries.append(ScheduleEntry(month, interest, principal, balance))
    return entries


def _linear_schedule(terms: LoanTerms) -> List[ScheduleEntry]:
    rate = terms.monthly_rate
    balance = terms.basis
    installment = balance / terms.amortizing_months

    entries: List[ScheduleEntry] = []
    for month in range(1, terms.tenor_months + 1):
        interest = balance * rate
        if month <= terms.interest_only_months:
            principal = 0.0
        elif month == terms.tenor_months:
            principal = balance
        else:
            principal = min(installment, balance)
        balance = 0.0 if month == terms.tenor_months else balance - principal
        entries.append(ScheduleEntry(month, interest, principal, balance))
    return entries


def _bullet_schedule(terms: LoanTerms) -> List[ScheduleEntry]:
    basis = terms.basis
    interest = basis * terms.monthly_rate
    entries = [
        ScheduleEntry(month, interest, 0.0, basis) for month in range(1, terms.tenor_months)
    ]
    entries.append(ScheduleEntry(terms.tenor_months, interest, basis, 0.0))
    return entries


# BuildingDepot amortizes the drawn amount; LoanTerms.basis selects it.
_SCHEDULE_BUILDERS: Dict[RedemptionType, Callable[[LoanTerms], List[ScheduleEntry]]] = {
    RedemptionType.ANNUITY: _annuity_schedule,
    RedemptionType.LINEAR: _linear_schedule,
    RedemptionType.BULLET: _bullet_schedule,
    RedemptionType.BUILDING_DEPOT: _annuity_schedule,
}


class AmortizationScheduler:
    """
    Generate loan schedules and fold them onto simulation years.

    The scheduler is stateless; one instance can be shared by any number of
    projections.
    """

    def generate(self, terms: LoanTerms) -> List[ScheduleEntry]:
        """
        Build the full monthly schedule.

        Parameters
        ----------
        terms : LoanTerms
            Loan terms; validated before any computation.

        Returns
        -------
        list of ScheduleEntry
            One entry per month, ``len == terms.tenor_months``.

        Raises
        ------
        InvalidLoanTerms
            If the terms are invalid.
        """
        terms.validate()
        redemption = RedemptionType.parse(terms.redemption_type)
        schedule = _SCHEDULE_BUILDERS[redemption](terms)
        logger.debug(
            "Generated %s schedule: basis=%.2f rate=%.4f%% tenor=%d io=%d",
            redemption.value,
            terms.basis,
            terms.annual_rate,
            terms.tenor_months,
            terms.interest_only_months,
        )
        return schedule

    def entry_for_month(self, terms: LoanTerms, month: int) -> ScheduleEntry:
        """Return the schedule entry for a 1-based month."""
        if month < 1 or month > terms.tenor_months:
            raise InvalidLoanTerms(
                f"Month {month} outside loan tenor 1..{terms.tenor_months}", field="month"
            )
        return self.generate(terms)[month - 1]

    def outstanding_after(self, terms: LoanTerms, months_paid: int) -> float:
        """Balance after ``months_paid`` scheduled payments."""
        if months_paid <= 0:
            return terms.basis
        if months_paid >= terms.tenor_months:
            return 0.0
        return self.generate(terms)[months_paid - 1].remaining_balance

    def to_dataframe(self, schedule: List[ScheduleEntry], rounded: bool = False) -> pd.DataFrame:
        """
        Tabulate a schedule.

        Parameters
        ----------
        schedule : list of ScheduleEntry
            Schedule from :meth:`generate`.
        rounded : bool
            Round money columns to cents.

        Returns
        -------
        pd.DataFrame
            Columns ``month, interest, principal, payment, remaining_balance``.
        """
        df = pd.DataFrame(
            {
                "month": [e.month for e in schedule],
                "interest": [e.interest for e in schedule],
                "principal": [e.principal for e in schedule],
                "payment": [e.payment for e in schedule],
                "remaining_balance": [e.remaining_balance for e in schedule],
            }
        )
        if rounded:
            money = ["interest", "principal", "payment", "remaining_balance"]
            df[money] = df[money].round(2)
        return df

    def aggregate_yearly(
        self,
        terms: LoanTerms,
        n_years: int,
        start_offset_months: int = 0,
    ) -> List[YearlyLoanPayment]:
        """
        Fold a loan's monthly schedule onto simulation years.

        Simulation month ``m`` (1-based) is loan month
        ``m - start_offset_months``. A negative offset means the loan is
        already running when the simulation starts, so only its remaining
        months are counted. A positive offset means the loan is disbursed
        during the horizon; its basis is reported as a disbursement in the
        year of its first month and it contributes partial years.

        Parameters
        ----------
        terms : LoanTerms
            Loan terms.
        n_years : int
            Number of simulation years.
        start_offset_months : int
            Simulation month preceding the loan's first month.

        Returns
        -------
        list of YearlyLoanPayment
            Exactly ``n_years`` entries, zero-filled where the loan is
            inactive.
        """
        horizon = 12 * n_years
        schedule = self.generate(terms)
        # balances[k] is the balance after k scheduled payments
        balances = [terms.basis] + [e.remaining_balance for e in schedule]

        df = self.to_dataframe(schedule)
        df = df.assign(sim_month=df["month"] + start_offset_months)
        df = df[(df["sim_month"] >= 1) & (df["sim_month"] <= horizon)]
        df = df.assign(year=(df["sim_month"] - 1) // 12 + 1)

        years = pd.RangeIndex(1, n_years + 1, name="year")
        yearly = df.groupby("year")[["interest", "principal"]].sum().reindex(years, fill_value=0.0)
        disbursement_year = start_offset_months // 12 + 1 if start_offset_months > 0 else None

        result: List[YearlyLoanPayment] = []
        for year in years:
            months_paid = 12 * int(year) - start_offset_months
            if months_paid <= 0:
                outstanding = 0.0
            else:
                outstanding = balances[min(months_paid, terms.tenor_months)]
            result.append(
                YearlyLoanPayment(
                    year=int(year),
                    interest=float(yearly.loc[year, "interest"]),
                    principal=float(yearly.loc[year, "principal"]),
                    disbursement=terms.basis if year == disbursement_year else 0.0,
                    outstanding=outstanding,
                )
            )
        return result
