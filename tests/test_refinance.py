"""
Test suite for refinancing
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.exceptions import (
    GracePeriodNotApplicable, LedgerValidationError, LoanNotFound, LoanNotRefinanceable
)
from loan_ledger.models import LoanStatus, LoanType


class TestRefinanceEngine:
    """Test closing a loan and opening its successor"""

    def test_refinance_carries_remaining_balance(self, ledger, make_loan, pay, refs):
        created = make_loan(penalty_rate_id=refs.penalty)
        pay(created.loan.id, "100000", date(2025, 1, 20))

        result = ledger.refinance(created.loan.id, {
            "as_of": date(2025, 1, 25), "installment_count": 4, "refinanced_by": "user-3"
        })

        old, new = result.old_loan, result.new_loan
        assert old.status == LoanStatus.REFINANCED
        assert not old.is_active
        assert old.refinanced_to_id == new.id
        assert old.closed_on == date(2025, 1, 25)

        assert new.refinanced_from_id == old.id
        assert new.loan_amount == Decimal('200000')
        assert new.remaining_balance == Decimal('200000')
        assert new.customer_id == old.customer_id
        assert new.penalty_rate_id == refs.penalty
        assert new.interest_rate_id == old.interest_rate_id
        assert new.status == LoanStatus.CREATED
        assert new.start_date == date(2025, 1, 25)

        assert len(result.installments) == 4
        assert sum(i.capital_amount for i in result.installments) == Decimal('200000')
        assert result.installments[0].due_date == date(2025, 2, 25)

    def test_history_not_copied(self, ledger, make_loan, pay):
        created = make_loan()
        pay(created.loan.id, "100000", date(2025, 1, 20))

        result = ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 25)})

        assert ledger.get_payments(result.new_loan.id) == []
        assert len(ledger.get_payments(created.loan.id)) == 1
        # Unpaid obligations of the old loan no longer count
        assert len(ledger.get_installments(created.loan.id)) == 1

    def test_new_terms_override_inherited(self, ledger, make_loan, refs):
        created = make_loan()

        result = ledger.refinance(created.loan.id, {
            "as_of": date(2025, 1, 10), "loan_amount": "500000",
            "interest_rate_id": refs.rate_ten, "payment_frequency_id": refs.weekly,
            "installment_count": 5
        })

        new = result.new_loan
        assert new.loan_amount == Decimal('500000')
        assert new.interest_rate_id == refs.rate_ten
        assert new.payment_frequency_id == refs.weekly
        assert result.installments[0].due_date == date(2025, 1, 17)
        assert result.installments[0].interest_amount == Decimal('50000.00')

    def test_refinance_into_interest_only_with_grace(self, ledger, make_loan, refs):
        created = make_loan()

        result = ledger.refinance(created.loan.id, {
            "as_of": date(2025, 1, 10), "loan_type": "only_interests",
            "grace_period_id": refs.grace_month
        })

        assert result.new_loan.loan_type == LoanType.ONLY_INTERESTS
        assert result.new_loan.grace_end_date == date(2025, 2, 9)
        assert result.installments == []

    def test_change_diffs(self, ledger, make_loan):
        created = make_loan()

        result = ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 10)})

        old_fields = {c.field for c in result.changes if c.record_id == created.loan.id}
        assert {"status", "is_active", "refinanced_to_id"} <= old_fields
        assert any(c.record_id == result.new_loan.id for c in result.changes)


class TestScenarioE:
    """Refinancing an already refinanced loan"""

    def test_second_refinance_rejected(self, ledger, make_loan):
        created = make_loan()
        ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 10)})
        loans_before = ledger.repos.loans.count()

        with pytest.raises(LoanNotRefinanceable):
            ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 11)})

        assert ledger.repos.loans.count() == loans_before


class TestRefinanceRejections:
    """Test refinance preconditions"""

    def test_cancelled_loan(self, ledger, make_loan):
        created = make_loan()
        ledger.cancel_loan(created.loan.id, date(2025, 1, 10))

        with pytest.raises(LoanNotRefinanceable):
            ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 11)})
        assert ledger.repos.loans.count() == 1

    def test_paid_loan_needs_new_amount(self, ledger, make_loan, pay):
        created = make_loan()
        pay(created.loan.id, "300000", date(2025, 1, 20))

        with pytest.raises(LoanNotRefinanceable):
            ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 21)})

        result = ledger.refinance(created.loan.id, {"as_of": date(2025, 1, 21), "loan_amount": "50000"})
        assert result.new_loan.loan_amount == Decimal('50000')
        assert ledger.get_loan(created.loan.id).status == LoanStatus.REFINANCED

    def test_grace_period_on_fixed_fees_rolls_back(self, ledger, make_loan, refs):
        created = make_loan()

        with pytest.raises(GracePeriodNotApplicable):
            ledger.refinance(created.loan.id, {
                "as_of": date(2025, 1, 10), "grace_period_id": refs.grace_month
            })

        loan = ledger.get_loan(created.loan.id)
        assert loan.status == LoanStatus.CREATED
        assert loan.is_active
        assert ledger.repos.loans.count() == 1

    def test_unknown_loan(self, ledger):
        with pytest.raises(LoanNotFound):
            ledger.refinance("missing", {"as_of": date(2025, 1, 10)})

    def test_as_of_required(self, ledger, make_loan):
        created = make_loan()
        with pytest.raises(LedgerValidationError):
            ledger.refinance(created.loan.id, {})
