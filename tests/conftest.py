"""
Shared fixtures: a ledger on in-memory storage with a small reference catalogue
"""

import pytest
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from loan_ledger.config import LedgerConfig
from loan_ledger.ledger import LoanLedger
from loan_ledger.storage import InMemoryStorage


@pytest.fixture
def ledger():
    return LoanLedger(storage=InMemoryStorage(), cfg=LedgerConfig())


@pytest.fixture
def refs(ledger):
    """Reference records most tests need"""
    return SimpleNamespace(
        customer=ledger.add_customer("Ana Torres").id,
        rate_zero=ledger.add_interest_rate("No interest", "0").id,
        rate_ten=ledger.add_interest_rate("10% monthly", "0.10").id,
        rate_five_percent=ledger.add_interest_rate("5% monthly", "5").id,
        penalty=ledger.add_penalty_rate("0.1% daily", "0.001").id,
        penalty_five=ledger.add_penalty_rate("5% daily", "0.05").id,
        monthly=ledger.add_payment_frequency("Monthly").id,
        weekly=ledger.add_payment_frequency("Weekly").id,
        biweekly=ledger.add_payment_frequency("Quincenal").id,
        daily=ledger.add_payment_frequency("Diaria").id,
        grace_month=ledger.add_grace_period("1 month", 30).id,
        term_three=ledger.add_term(3).id,
        term_ten=ledger.add_term(10).id,
    )


@pytest.fixture
def make_loan(ledger, refs):
    """Create a loan with sensible defaults; keyword arguments override them"""
    def _make(**overrides):
        params = {
            "customer_id": refs.customer,
            "loan_amount": "300000",
            "interest_rate_id": refs.rate_zero,
            "payment_frequency_id": refs.monthly,
            "loan_type": "fixed_fees",
            "start_date": date(2025, 1, 1),
            "installment_count": 3,
        }
        params.update(overrides)
        return ledger.create_loan(params)
    return _make


@pytest.fixture
def pay(ledger):
    """Register a payment: pay(loan_id, "1000", date(...))"""
    def _pay(loan_id, amount, on, **extra):
        params = {"loan_id": loan_id, "amount": Decimal(amount), "payment_date": on}
        params.update(extra)
        return ledger.register_payment(params)
    return _pay
