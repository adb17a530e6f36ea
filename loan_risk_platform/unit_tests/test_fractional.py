"""
Fractional Period Billing Tests
===============================

Tests for invoice dates, real-valued elapsed periods and interpolated
billing amounts when the invoice day differs from the loan anniversary.
"""

import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from loan_risk_platform.engine.amortization import AmortizationScheduler, LoanTerms
from loan_risk_platform.engine.exceptions import InvalidLoanTerms
from loan_risk_platform.engine.fractional import FractionalPeriodCalculator, add_months


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def calculator() -> FractionalPeriodCalculator:
    return FractionalPeriodCalculator()


@pytest.fixture
def terms() -> LoanTerms:
    return LoanTerms(principal=120_000, annual_rate=6.0, tenor_months=60)


# =============================================================================
# Calendar Tests
# =============================================================================

class TestInvoiceDates:
    """Tests for invoice date arithmetic and month-end clamping."""

    def test_next_invoice_same_month(self, calculator):
        assert calculator.next_invoice_date(15, date(2024, 3, 10)) == date(2024, 3, 15)

    def test_next_invoice_on_reference_day(self, calculator):
        assert calculator.next_invoice_date(10, date(2024, 3, 10)) == date(2024, 3, 10)

    def test_next_invoice_rolls_to_next_month(self, calculator):
        assert calculator.next_invoice_date(5, date(2024, 12, 10)) == date(2025, 1, 5)

    def test_next_invoice_clamped_to_month_end(self, calculator):
        assert calculator.next_invoice_date(31, date(2023, 2, 10)) == date(2023, 2, 28)
        assert calculator.next_invoice_date(31, date(2024, 2, 29)) == date(2024, 2, 29)

    def test_previous_invoice_strictly_before(self, calculator):
        assert calculator.previous_invoice_date(31, date(2024, 3, 31)) == date(2024, 2, 29)
        assert calculator.previous_invoice_date(1, date(2024, 3, 10)) == date(2024, 3, 1)

    @pytest.mark.parametrize("day", [0, 32])
    def test_invalid_invoice_day(self, calculator, day):
        with pytest.raises(InvalidLoanTerms):
            calculator.next_invoice_date(day, date(2024, 1, 1))

    def test_add_months_clamps(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)


class TestElapsedPeriods:
    """Tests for real-valued period counting."""

    def test_whole_periods(self, calculator):
        assert calculator.elapsed_periods(date(2024, 1, 15), date(2024, 3, 15)) == pytest.approx(2.0)

    def test_partial_period_actual_days(self, calculator):
        # 15 of the 29 days between 2024-02-15 and 2024-03-15
        elapsed = calculator.elapsed_periods(date(2024, 1, 15), date(2024, 3, 1))
        assert elapsed == pytest.approx(1 + 15 / 29)

    def test_month_end_anniversary(self, calculator):
        assert calculator.elapsed_periods(date(2024, 1, 31), date(2024, 2, 29)) == pytest.approx(1.0)

    def test_before_start(self, calculator):
        assert calculator.elapsed_periods(date(2024, 1, 15), date(2024, 1, 1)) == 0.0


# =============================================================================
# Billing Amount Tests
# =============================================================================

class TestFractionalBilling:
    """Tests for interpolated billing amounts."""

    def test_anniversary_invoice_matches_schedule(self, calculator, terms):
        """With the invoice day on the anniversary the whole-period entry is billed."""
        entry = AmortizationScheduler().generate(terms)[1]
        result = calculator.calculate(terms, date(2024, 1, 15), 15, date(2024, 3, 10))

        assert result.invoice_date == date(2024, 3, 15)
        assert result.previous_invoice_date == date(2024, 2, 15)
        assert result.interest == pytest.approx(entry.interest)
        assert result.principal == pytest.approx(entry.principal)
        assert result.remaining_balance == pytest.approx(entry.remaining_balance)
        assert not result.is_completed

    def test_continuity_near_anniversary(self, calculator, terms):
        """An invoice one day before the anniversary bills almost a full period."""
        entry = AmortizationScheduler().generate(terms)[1]
        result = calculator.calculate(terms, date(2024, 1, 15), 14, date(2024, 3, 10))

        assert result.payment == pytest.approx(entry.payment, rel=0.01)

    def test_off_anniversary_amounts(self, calculator, terms):
        result = calculator.calculate(terms, date(2024, 1, 15), 1, date(2024, 3, 10))

        assert result.invoice_date == date(2024, 4, 1)
        assert result.previous_invoice_date == date(2024, 3, 1)
        assert result.start_elapsed_periods == pytest.approx(1 + 15 / 29)
        assert result.elapsed_periods == pytest.approx(2 + 17 / 31)
        assert result.interest > 0
        assert result.principal > 0

    def test_first_invoice_starts_at_loan_start(self, calculator, terms):
        result = calculator.calculate(terms, date(2024, 1, 15), 1, date(2024, 1, 20))

        assert result.previous_invoice_date == date(2024, 1, 15)
        assert result.start_elapsed_periods == 0.0

    def test_interest_only_flag(self, calculator):
        terms = LoanTerms(100_000, 6.0, 24, interest_only_months=6)
        result = calculator.calculate(terms, date(2024, 1, 1), 15, date(2024, 2, 1))

        assert result.is_interest_only
        assert result.principal == 0.0
        assert result.interest > 0

    def test_invoice_clamped_to_loan_end(self, calculator):
        terms = LoanTerms(30_000, 6.0, 3)
        result = calculator.calculate(terms, date(2024, 1, 15), 20, date(2024, 4, 10))

        assert result.invoice_date == date(2024, 4, 15)
        assert result.elapsed_periods == pytest.approx(3.0)
        assert result.remaining_balance == pytest.approx(0.0, abs=1e-6)

    def test_completed_loan(self, calculator):
        terms = LoanTerms(12_000, 6.0, 12)
        result = calculator.calculate(terms, date(2020, 1, 1), 1, date(2022, 1, 1))

        assert result.is_completed
        assert result.payment == 0.0
        assert result.remaining_balance == 0.0
