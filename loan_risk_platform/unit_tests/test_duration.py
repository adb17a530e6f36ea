"""
Duration Analytics Tests
========================

Tests for loan and book duration:
- Annuity closed form against explicit cash-flow summation
- Zero-rate, bullet, linear and interest-only loans
- Outstanding-weighted book figures and rate sensitivity
- Duration bucket distribution
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from loan_risk_platform.engine.amortization import AmortizationScheduler, LoanTerms, RedemptionType
from loan_risk_platform.engine.duration import (
    DURATION_BUCKETS,
    ActiveLoan,
    DurationAnalyzer,
    annuity_macaulay_months,
)


@pytest.fixture
def analyzer() -> DurationAnalyzer:
    return DurationAnalyzer()


@pytest.fixture
def annuity() -> LoanTerms:
    return LoanTerms(principal=250_000, annual_rate=6.0, tenor_months=120)


def summed_macaulay_years(analyzer, loan):
    """Explicit present-value weighted time of the remaining flows."""
    r = loan.terms.monthly_rate
    flows = analyzer.remaining_cashflows(loan)
    k = np.arange(1, len(flows) + 1)
    pv = flows / (1 + r) ** k
    return float((k * pv).sum() / pv.sum()) / 12.0


# =============================================================================
# Single Loan Tests
# =============================================================================

class TestLoanDuration:
    """Tests for the duration of one loan."""

    def test_annuity_closed_form_matches_summation(self, analyzer, annuity):
        loan = ActiveLoan("A", annuity)
        result = analyzer.loan_duration(loan)

        assert result.macaulay_duration == pytest.approx(summed_macaulay_years(analyzer, loan), rel=1e-6)
        assert result.macaulay_duration < annuity.tenor_months / 24.0 + 0.5

    def test_modified_duration(self, analyzer, annuity):
        result = analyzer.loan_duration(ActiveLoan("A", annuity))
        assert result.modified_duration == pytest.approx(result.macaulay_duration / 1.005)

    def test_seasoned_loan(self, analyzer, annuity):
        fresh = analyzer.loan_duration(ActiveLoan("A", annuity))
        seasoned = analyzer.loan_duration(ActiveLoan("A", annuity, months_elapsed=60))

        assert seasoned.remaining_months == 60
        assert seasoned.outstanding == pytest.approx(AmortizationScheduler().outstanding_after(annuity, 60))
        assert seasoned.macaulay_duration < fresh.macaulay_duration
        assert seasoned.macaulay_duration == pytest.approx(
            annuity_macaulay_months(annuity.monthly_rate, 60) / 12.0
        )

    def test_zero_rate(self, analyzer):
        result = analyzer.loan_duration(ActiveLoan("Z", LoanTerms(100_000, 0.0, 60)))

        assert result.macaulay_duration == pytest.approx(5.0)
        assert result.modified_duration == pytest.approx(5.0)

    def test_bullet_close_to_tenor(self, analyzer):
        loan = ActiveLoan("B", LoanTerms(100_000, 5.0, 60, redemption_type=RedemptionType.BULLET))
        result = analyzer.loan_duration(loan)

        assert 4.0 < result.macaulay_duration < 5.0
        assert result.macaulay_duration == pytest.approx(summed_macaulay_years(analyzer, loan))

    def test_linear_shorter_than_annuity(self, analyzer, annuity):
        linear = LoanTerms(250_000, 6.0, 120, redemption_type=RedemptionType.LINEAR)

        assert (
            analyzer.loan_duration(ActiveLoan("L", linear)).macaulay_duration
            < analyzer.loan_duration(ActiveLoan("A", annuity)).macaulay_duration
        )

    def test_interest_only_window_lengthens_duration(self, analyzer, annuity):
        io_terms = LoanTerms(250_000, 6.0, 120, interest_only_months=24)
        loan = ActiveLoan("IO", io_terms)
        result = analyzer.loan_duration(loan)

        assert result.macaulay_duration == pytest.approx(summed_macaulay_years(analyzer, loan))
        assert result.macaulay_duration > analyzer.loan_duration(ActiveLoan("A", annuity)).macaulay_duration

    def test_dv01(self, analyzer, annuity):
        result = analyzer.loan_duration(ActiveLoan("A", annuity))
        assert result.dv01 == pytest.approx(-result.modified_duration * 0.0001 * 250_000)

    def test_annuity_macaulay_edge_cases(self):
        assert annuity_macaulay_months(0.0, 12) == pytest.approx(6.5)
        assert annuity_macaulay_months(0.01, 0) == 0.0
        assert annuity_macaulay_months(0.01, 1) == pytest.approx(1.0)


# =============================================================================
# Book Tests
# =============================================================================

class TestDurationReport:
    """Tests for outstanding-weighted book figures."""

    @pytest.fixture
    def loans(self, annuity):
        return [
            ActiveLoan("A", annuity),
            ActiveLoan("B", LoanTerms(750_000, 4.0, 36, redemption_type=RedemptionType.BULLET)),
            ActiveLoan("REPAID", LoanTerms(50_000, 5.0, 24), months_elapsed=24),
        ]

    def test_weighted_duration(self, analyzer, loans):
        report = analyzer.analyze(loans)
        a, b = report.loans

        assert [d.loan_id for d in report.loans] == ["A", "B"]
        assert report.total_value == pytest.approx(1_000_000)
        assert report.weighted_modified_duration == pytest.approx(
            0.25 * a.modified_duration + 0.75 * b.modified_duration
        )
        assert report.average_yield == pytest.approx(0.25 * 6.0 + 0.75 * 4.0)

    def test_rate_sensitivities(self, analyzer, loans):
        report = analyzer.analyze(loans)

        assert [s.rate_shock for s in report.sensitivities] == [0.01, 0.02, 0.05]
        for s in report.sensitivities:
            assert s.value_change == pytest.approx(-report.weighted_modified_duration * s.rate_shock * 1_000_000)
            assert s.value_change_with_convexity > s.value_change
            assert s.percent_change == pytest.approx(s.value_change / 1_000_000)
        assert report.dv01 == pytest.approx(-report.weighted_modified_duration * 100)

    def test_buckets(self, analyzer, loans):
        report = analyzer.analyze(loans)
        buckets = report.buckets

        assert list(buckets.index) == [name for name, _, _ in DURATION_BUCKETS]
        assert buckets["count"].sum() == 2
        assert buckets.loc["2-5", "value"] == pytest.approx(1_000_000)

    def test_empty_book(self, analyzer):
        report = analyzer.analyze([])

        assert report.total_value == 0.0
        assert report.weighted_modified_duration == 0.0
        assert all(s.value_change == 0.0 for s in report.sensitivities)
        assert report.buckets["count"].sum() == 0

    def test_summary_and_frame(self, analyzer, loans):
        report = analyzer.analyze(loans)

        assert report.summary()["loan_count"] == 2
        assert set(report.summary()["sensitivities"]) == {"1%", "2%", "5%"}
        assert list(report.to_dataframe()["loan_id"]) == ["A", "B"]
