"""
Fractional Period Billing
=========================

Amounts due between two invoice dates when the invoice day of month does
not coincide with the loan's anniversary day.

Elapsed time since loan start is measured in real-valued periods: whole
monthly anniversaries plus the fraction of the current period that has
elapsed, counted in actual days over the actual length of that period. The
cumulative schedule is linearly interpolated between the bracketing whole
periods, and the amount billed for an invoice is the difference of the
cumulative amounts at the invoice date and at the previous invoice date.
When the invoice day equals the anniversary day the result reduces to the
whole-period :class:`~.amortization.ScheduleEntry`.

Example
-------
>>> from datetime import date
>>> calc = FractionalPeriodCalculator()
>>> result = calc.calculate(terms, date(2024, 1, 15), invoice_day=1,
...                         reference_date=date(2024, 3, 10))
>>> result.invoice_date
datetime.date(2024, 4, 1)
"""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

import pandas as pd

from .amortization import AmortizationScheduler, LoanTerms, ScheduleEntry
from .exceptions import InvalidLoanTerms

logger = logging.getLogger("LoanRisk.Fractional")


@dataclass(frozen=True)
class FractionalPaymentResult:
    """
    Amount due for one billing period.

    Attributes
    ----------
    invoice_date : date
        End of the billing period (clamped to the loan end date).
    previous_invoice_date : date
        Start of the billing period (never before the loan start).
    start_elapsed_periods : float
        Real-valued periods elapsed at ``previous_invoice_date``.
    elapsed_periods : float
        Real-valued periods elapsed at ``invoice_date``.
    interest : float
        Interest due for the billing period.
    principal : float
        Principal due for the billing period.
    remaining_balance : float
        Interpolated balance at ``invoice_date``.
    is_interest_only : bool
        The billing period starts inside the interest-only window.
    is_completed : bool
        The loan was fully repaid before the billing period started.
    """

    invoice_date: date
    previous_invoice_date: date
    start_elapsed_periods: float
    elapsed_periods: float
    interest: float
    principal: float
    remaining_balance: float
    is_interest_only: bool
    is_completed: bool

    @property
    def payment(self) -> float:
        return self.interest + self.principal


def clamp_to_month(year: int, month: int, day: int) -> date:
    """Return ``day`` of the given month, clamped to the month's last day."""
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def add_months(start: date, months: int) -> date:
    """Shift a date by whole months, clamping to month end."""
    return (pd.Timestamp(start) + pd.DateOffset(months=months)).date()


class FractionalPeriodCalculator:
    """
    Compute billing amounts for arbitrary invoice days.

    Parameters
    ----------
    scheduler : AmortizationScheduler, optional
        Schedule generator; a default instance is created when omitted.
    """

    def __init__(self, scheduler: Optional[AmortizationScheduler] = None) -> None:
        self.scheduler = scheduler or AmortizationScheduler()

    @staticmethod
    def _check_invoice_day(invoice_day: int) -> None:
        if not 1 <= invoice_day <= 31:
            raise InvalidLoanTerms(f"Invoice day must be in 1..31, got {invoice_day}", field="invoice_day")

    def next_invoice_date(self, invoice_day: int, reference: date) -> date:
        """
        First invoice date on or after ``reference``.

        The invoice day is clamped to the last day of short months.
        """
        self._check_invoice_day(invoice_day)
        candidate = clamp_to_month(reference.year, reference.month, invoice_day)
        if candidate >= reference:
            return candidate
        following = add_months(date(reference.year, reference.month, 1), 1)
        return clamp_to_month(following.year, following.month, invoice_day)

    def previous_invoice_date(self, invoice_day: int, before: date) -> date:
        """Last invoice date strictly before ``before``."""
        self._check_invoice_day(invoice_day)
        candidate = clamp_to_month(before.year, before.month, invoice_day)
        if candidate < before:
            return candidate
        preceding = add_months(date(before.year, before.month, 1), -1)
        return clamp_to_month(preceding.year, preceding.month, invoice_day)

    def elapsed_periods(self, start: date, as_of: date) -> float:
        """
        Real-valued monthly periods between ``start`` and ``as_of``.

        Whole anniversaries are counted first; the remainder is the share of
        actual days elapsed in the current period over its actual length.
        """
        if as_of <= start:
            return 0.0
        whole = (as_of.year - start.year) * 12 + (as_of.month - start.month)
        while whole > 0 and add_months(start, whole) > as_of:
            whole -= 1
        period_start = add_months(start, whole)
        period_end = add_months(start, whole + 1)
        fraction = (as_of - period_start).days / (period_end - period_start).days
        return whole + fraction

    @staticmethod
    def _cumulative(schedule: List[ScheduleEntry], basis: float, periods: float) -> Tuple[float, float, float]:
        """Cumulative interest, principal and balance after ``periods``."""
        tenor = len(schedule)
        periods = min(max(periods, 0.0), float(tenor))
        whole = int(math.floor(periods))
        fraction = periods - whole

        interest = sum(e.interest for e in schedule[:whole])
        principal = sum(e.principal for e in schedule[:whole])
        balance = schedule[whole - 1].remaining_balance if whole > 0 else basis
        if whole < tenor and fraction > 0:
            current = schedule[whole]
            interest += fraction * current.interest
            principal += fraction * current.principal
            balance -= fraction * current.principal
        return interest, principal, balance

    def calculate(
        self,
        terms: LoanTerms,
        start_date: date,
        invoice_day: int,
        reference_date: date,
    ) -> FractionalPaymentResult:
        """
        Amount due on the next invoice date on or after ``reference_date``.

        Parameters
        ----------
        terms : LoanTerms
            Loan terms.
        start_date : date
            Loan start; period ``k`` ends ``k`` months after it.
        invoice_day : int
            Day of month invoices are issued (1-31).
        reference_date : date
            Date from which the next invoice is sought.

        Returns
        -------
        FractionalPaymentResult
            Interpolated amounts for the billing period. Zero amounts with
            ``is_completed`` set once the loan has run its full tenor.

        Raises
        ------
        InvalidLoanTerms
            If the terms or the invoice day are invalid.
        """
        schedule = self.scheduler.generate(terms)
        loan_end = add_months(start_date, terms.tenor_months)

        invoice = self.next_invoice_date(invoice_day, reference_date)
        if invoice > loan_end:
            invoice = loan_end
        previous = max(self.previous_invoice_date(invoice_day, invoice), start_date)
        if previous > invoice:
            previous = invoice

        t_start = self.elapsed_periods(start_date, previous)
        t_end = self.elapsed_periods(start_date, invoice)

        if t_start >= terms.tenor_months or reference_date > loan_end:
            logger.debug("Loan completed on %s; nothing due", loan_end)
            return FractionalPaymentResult(
                invoice_date=invoice,
                previous_invoice_date=previous,
                start_elapsed_periods=t_start,
                elapsed_periods=t_end,
                interest=0.0,
                principal=0.0,
                remaining_balance=0.0,
                is_interest_only=False,
                is_completed=True,
            )

        i0, p0, _ = self._cumulative(schedule, terms.basis, t_start)
        i1, p1, balance = self._cumulative(schedule, terms.basis, t_end)

        return FractionalPaymentResult(
            invoice_date=invoice,
            previous_invoice_date=previous,
            start_elapsed_periods=t_start,
            elapsed_periods=t_end,
            interest=i1 - i0,
            principal=p1 - p0,
            remaining_balance=balance,
            is_interest_only=t_start < terms.interest_only_months,
            is_completed=False,
        )
