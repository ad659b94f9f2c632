"""
Ledger Invariants Module

Consistency checks run inside a unit of work before it commits. A failure
raises ConsistencyError, which aborts the whole unit: an inconsistent ledger
state is never observable after commit.
"""

from typing import List

from .exceptions import ConsistencyError
from .models import Loan, LoanType, Payment, PaymentAllocation
from .money import ZERO, sum_amounts
from .unit_of_work import UnitOfWork


def check_loan(uow: UnitOfWork, loan: Loan) -> None:
    """Balance, schedule and moratory invariants of one loan"""
    if loan.remaining_balance < ZERO or loan.remaining_balance > loan.loan_amount:
        raise ConsistencyError(
            f"Loan {loan.id} remaining balance {loan.remaining_balance} outside "
            f"[0, {loan.loan_amount}]",
            loan_id=loan.id, amount=loan.remaining_balance, limit=loan.loan_amount
        )

    installments = uow.repos.loan_installments(loan.id, active_only=False)
    for installment in installments:
        if installment.total_amount != installment.capital_amount + installment.interest_amount:
            raise ConsistencyError(
                f"Installment {installment.id} total does not equal capital plus interest",
                loan_id=loan.id, installment_id=installment.id
            )
        if installment.paid_amount != installment.paid_capital + installment.paid_interest:
            raise ConsistencyError(
                f"Installment {installment.id} paid amount does not match its parts",
                loan_id=loan.id, installment_id=installment.id
            )
        if not ZERO <= installment.paid_amount <= installment.total_amount:
            raise ConsistencyError(
                f"Installment {installment.id} paid amount {installment.paid_amount} "
                f"outside [0, {installment.total_amount}]",
                loan_id=loan.id, installment_id=installment.id,
                amount=installment.paid_amount, limit=installment.total_amount
            )
        if installment.is_paid != (installment.paid_amount >= installment.total_amount):
            raise ConsistencyError(
                f"Installment {installment.id} paid flag disagrees with its paid amount",
                loan_id=loan.id, installment_id=installment.id
            )

    capital_paid = sum_amounts(i.paid_capital for i in installments)
    if loan.remaining_balance != loan.loan_amount - capital_paid:
        raise ConsistencyError(
            f"Loan {loan.id} remaining balance {loan.remaining_balance} does not match "
            f"capital collected {capital_paid}",
            loan_id=loan.id, amount=loan.remaining_balance
        )

    if loan.loan_type == LoanType.FIXED_FEES and loan.is_active:
        scheduled = sum_amounts(i.capital_amount for i in installments if i.is_active)
        if scheduled != loan.loan_amount:
            raise ConsistencyError(
                f"Loan {loan.id} scheduled capital {scheduled} does not equal loan amount",
                loan_id=loan.id, amount=scheduled, limit=loan.loan_amount
            )

    for moratory in uow.repos.moratory_interests.find(loan_id=loan.id):
        if moratory.paid_amount + moratory.discounted_amount > moratory.amount:
            raise ConsistencyError(
                f"Moratory interest {moratory.id} settled beyond its amount",
                loan_id=loan.id, moratory_id=moratory.id, limit=moratory.amount
            )
        discounted = sum_amounts(
            d.amount for d in uow.repos.discounts.find(moratory_id=moratory.id, is_active=True)
        )
        if discounted != moratory.discounted_amount:
            raise ConsistencyError(
                f"Moratory interest {moratory.id} discounts do not reconcile",
                loan_id=loan.id, moratory_id=moratory.id, amount=discounted
            )


def check_payment(payment: Payment, allocations: List[PaymentAllocation]) -> None:
    """Allocations of a payment must add up to the payment amount exactly"""
    allocated = sum_amounts(a.total for a in allocations)
    if allocated != payment.amount:
        raise ConsistencyError(
            f"Payment {payment.id} allocations total {allocated}, expected {payment.amount}",
            payment_id=payment.id, amount=allocated, limit=payment.amount
        )
    for allocation in allocations:
        if min(allocation.applied_to_capital, allocation.applied_to_interest,
               allocation.applied_to_late_fee) < ZERO:
            raise ConsistencyError(
                f"Allocation {allocation.id} carries a negative portion",
                payment_id=payment.id
            )
