"""
Loan Ledger Engine

Microfinance loan ledger: amortization schedules, moratory (late-fee)
accrual, discounts, payment allocation waterfall, refinancing and
cancellation. All monetary math uses Decimal.
"""

__version__ = "1.0.0"
