"""
Test suite for moratory discounts
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.exceptions import (
    DiscountExceedsOutstandingDebt, LedgerValidationError, LoanInactive,
    MoratoryInterestNotFound, ReferenceNotFound
)
from loan_ledger.models import MoratoryStatus


@pytest.fixture
def late_fee(ledger, make_loan, refs):
    """Loan whose first installment carries a 1,000 late fee"""
    created = make_loan(penalty_rate_id=refs.penalty)
    record = ledger.accrue(created.loan.id, date(2025, 2, 11))[0]
    assert record.amount == Decimal('1000.00')
    return created.loan, record


class TestDiscountApplier:
    """Test discount bounds and status changes"""

    def test_partial_discount(self, ledger, late_fee):
        loan, record = late_fee

        result = ledger.apply_discount({
            "moratory_id": record.id, "amount": "300", "description": "Goodwill", "created_by": "user-7"
        })

        assert result.discount.amount == Decimal('300')
        assert result.moratory.discounted_amount == Decimal('300')
        assert result.moratory.outstanding == Decimal('700.00')
        assert result.moratory.status == MoratoryStatus.PARTIALLY_DISCOUNTED
        assert result.discount.loan_id == loan.id
        assert result.discount.installment_id == record.installment_id
        assert result.discount.created_by == "user-7"

    def test_full_discount(self, ledger, late_fee):
        loan, record = late_fee

        ledger.apply_discount({"moratory_id": record.id, "amount": "300"})
        result = ledger.apply_discount({"moratory_id": record.id, "amount": "700"})

        assert result.moratory.status == MoratoryStatus.DISCOUNTED
        assert result.moratory.outstanding == Decimal('0')
        assert sum(d.amount for d in ledger.get_discounts(loan.id)) == record.amount

    @pytest.mark.parametrize("amount", ["1000.01", "0", "-5"])
    def test_out_of_bounds_amounts_rejected(self, ledger, late_fee, amount):
        loan, record = late_fee

        with pytest.raises(DiscountExceedsOutstandingDebt) as exc_info:
            ledger.apply_discount({"moratory_id": record.id, "amount": amount})

        assert exc_info.value.details["limit"] == Decimal('1000.00')
        assert ledger.get_discounts(loan.id) == []

    def test_discount_cannot_exceed_what_payments_left(self, ledger, late_fee, pay):
        """Test payments and discounts together never exceed the moratory amount"""
        loan, record = late_fee
        pay(loan.id, "400", date(2025, 2, 11))

        with pytest.raises(DiscountExceedsOutstandingDebt):
            ledger.apply_discount({"moratory_id": record.id, "amount": "601"})

        result = ledger.apply_discount({"moratory_id": record.id, "amount": "600"})
        assert result.moratory.status == MoratoryStatus.DISCOUNTED
        assert result.moratory.paid_amount + result.moratory.discounted_amount == result.moratory.amount

    def test_description_carries_system_note(self, ledger, late_fee):
        loan, record = late_fee

        result = ledger.apply_discount({
            "moratory_id": record.id, "amount": "100", "description": "Customer hardship",
            "created_by": "user-7"
        })

        assert result.discount.description.startswith("Customer hardship")
        assert record.id in result.discount.description
        assert "user-7" in result.discount.description

    def test_installment_amounts_untouched(self, ledger, late_fee):
        loan, record = late_fee
        before = ledger.get_installments(loan.id)[0]

        ledger.apply_discount({"moratory_id": record.id, "amount": "1000"})

        after = ledger.get_installments(loan.id)[0]
        assert after.capital_amount == before.capital_amount
        assert after.interest_amount == before.interest_amount
        assert after.paid_amount == before.paid_amount

    def test_change_diff_reported(self, ledger, late_fee):
        loan, record = late_fee

        result = ledger.apply_discount({"moratory_id": record.id, "amount": "250"})

        fields = {change.field: change for change in result.changes}
        assert fields["discounted_amount"].old_value == "0"
        assert fields["discounted_amount"].new_value == "250"
        assert fields["status"].new_value == MoratoryStatus.PARTIALLY_DISCOUNTED.value


class TestDiscountValidation:
    """Test rejected discount requests"""

    def test_unknown_moratory_record(self, ledger):
        with pytest.raises(MoratoryInterestNotFound):
            ledger.apply_discount({"moratory_id": "missing", "amount": "10"})

    def test_sub_cent_amount(self, ledger, late_fee):
        loan, record = late_fee
        with pytest.raises(LedgerValidationError):
            ledger.apply_discount({"moratory_id": record.id, "amount": "0.001"})

    def test_float_amount_rejected(self, ledger, late_fee):
        loan, record = late_fee
        with pytest.raises(LedgerValidationError):
            ledger.apply_discount({"moratory_id": record.id, "amount": 10.5})

    def test_unknown_discount_type(self, ledger, late_fee):
        loan, record = late_fee
        with pytest.raises(ReferenceNotFound):
            ledger.apply_discount({"moratory_id": record.id, "amount": "10", "discount_type_id": "nope"})
        assert ledger.get_discounts(loan.id) == []

    def test_seeded_discount_type(self, ledger, late_fee):
        loan, record = late_fee
        seeded = ledger.seed_reference_data()

        result = ledger.apply_discount({
            "moratory_id": record.id, "amount": "10",
            "discount_type_id": seeded["discount_types"][0]
        })

        assert result.discount.discount_type_id == seeded["discount_types"][0]

    def test_cancelled_loan_rejects_discounts(self, ledger, late_fee):
        loan, record = late_fee
        ledger.cancel_loan(loan.id, date(2025, 2, 12))

        with pytest.raises(LoanInactive):
            ledger.apply_discount({"moratory_id": record.id, "amount": "10"})
