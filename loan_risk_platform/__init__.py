"""
Loan Risk Platform
==================

Loan amortization schedules and correlated Monte Carlo credit-risk
simulation for single borrowers and portfolios of borrowers.

Subpackages
-----------
engine
    Schedules, scenario generation, financial projection, solvency tests,
    portfolio aggregation and duration analytics.
"""

__version__ = "0.1.0"
