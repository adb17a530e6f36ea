"""
Loan Risk Platform Unit Tests
=============================

This package contains unit tests for the loan schedules, scenario
generation, projection and aggregation engine.

Test Modules
------------
test_amortization
    Schedules per redemption type and yearly aggregation.
test_fractional
    Billing amounts for invoice days off the loan anniversary.
test_market_data
    Sector and property-type reference data and exposure validation.
test_correlation
    Correlation validation, repair and correlated draws.
test_projection
    Financial projection and solvency tests.
test_monte_carlo
    Single-entity simulation, reproducibility and parallel execution.
test_portfolio
    Shared systemic draws and portfolio loss statistics.
test_duration
    Duration, convexity and rate sensitivity.
test_loader
    Request validation and hydration.
test_config
    Environment-driven settings.

Running Tests
-------------
Execute all tests with pytest::

    pytest loan_risk_platform/unit_tests/ -v
"""
