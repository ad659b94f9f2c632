"""
Payment Allocation Module

Distributes a collected payment over a loan's obligations. Installments are
settled oldest due date first; inside each installment the payment goes to
the late fee, then interest, then capital. The waterfall is fixed.

Every cent of a payment lands on exactly one allocation row. Amounts above
the loan's total outstanding debt are rejected, never partially applied.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import date
from typing import List, Optional

from .changes import FieldChange, diff_records
from .exceptions import (
    ConsistencyError, LedgerValidationError, OverpaymentNotSupported
)
from .invariants import check_payment
from .lifecycle import LoanLifecycle
from .logging_config import get_logger, log_action
from .models import (
    Installment, Loan, MoratoryStatus, Payment, PaymentAllocation, new_id, utc_now
)
from .moratory import MoratoryAccrualEngine
from .money import ZERO, has_valid_precision, sum_amounts, to_decimal
from .unit_of_work import UnitOfWork


@dataclass
class AllocationResult:
    """Payment, its allocation rows and the resulting loan state"""
    payment: Payment
    allocations: List[PaymentAllocation]
    loan: Loan
    changes: List[FieldChange] = field(default_factory=list)

    @property
    def applied_to_late_fee(self) -> Decimal:
        return sum_amounts(a.applied_to_late_fee for a in self.allocations)

    @property
    def applied_to_interest(self) -> Decimal:
        return sum_amounts(a.applied_to_interest for a in self.allocations)

    @property
    def applied_to_capital(self) -> Decimal:
        return sum_amounts(a.applied_to_capital for a in self.allocations)


class PaymentAllocator:
    """Applies payments to a loan under its writer lock"""

    def __init__(self, lifecycle: LoanLifecycle, accrual: MoratoryAccrualEngine,
                 accrue_on_payment: bool = True, decimal_places: int = 2):
        self.lifecycle = lifecycle
        self.accrual = accrual
        self.accrue_on_payment = accrue_on_payment
        self.places = decimal_places
        self.logger = get_logger("loan_ledger.allocation")

    def outstanding_debt(self, uow: UnitOfWork, loan: Loan) -> Decimal:
        """Late fees plus unpaid interest and capital across active installments"""
        total = ZERO
        for installment in uow.repos.loan_installments(loan.id):
            total += installment.outstanding
            total += sum_amounts(
                m.outstanding for m in self.accrual.open_records(uow, installment.id)
            )
        return total

    def allocate(self, uow: UnitOfWork, loan_id: str, amount: Decimal, payment_date: date,
                 payment_method_id: str = "cash", payment_type_id: str = "regular",
                 recorded_by_user_id: Optional[str] = None,
                 collector_id: Optional[str] = None) -> AllocationResult:
        """
        Collect a payment against a loan.

        Raises:
            LoanNotFound: no such loan
            LoanInactive: loan cancelled, refinanced or inactive
            LoanAlreadyCompleted: loan already paid
            LedgerValidationError: amount not positive or too precise
            OverpaymentNotSupported: amount exceeds the total outstanding debt
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise LedgerValidationError("Payment amount must be positive", field="amount", amount=amount)
        if not has_valid_precision(amount, self.places):
            raise LedgerValidationError(
                f"Payment amount has more than {self.places} decimal places",
                field="amount", amount=amount
            )
        if payment_date is None:
            raise LedgerValidationError("Payment date is required", field="payment_date")

        loan = self.lifecycle.load(uow, loan_id)
        self.lifecycle.ensure_mutable(loan)
        before = Loan.from_dict(loan.to_dict())

        if self.accrue_on_payment:
            self.accrual.accrue_loan(uow, loan, payment_date)

        outstanding = self.outstanding_debt(uow, loan)
        if amount > outstanding:
            log_action(
                self.logger, "warning", f"Overpayment rejected for loan {loan.id}",
                user_id=recorded_by_user_id, action="allocate_payment", resource=f"loan:{loan.id}",
                extra={"amount": str(amount), "outstanding": str(outstanding)}
            )
            raise OverpaymentNotSupported(loan.id, amount, outstanding)

        now = utc_now()
        payment = Payment(
            id=new_id(),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=amount,
            payment_date=payment_date,
            payment_type_id=payment_type_id,
            payment_method_id=payment_method_id,
            recorded_by_user_id=recorded_by_user_id,
            collector_id=collector_id
        )
        uow.repos.payments.save(payment)

        remaining = amount
        capital_applied = ZERO
        allocations = []
        for installment in uow.repos.loan_installments(loan.id):
            if remaining == ZERO:
                break
            allocation = self._settle_installment(uow, payment, installment, remaining)
            if allocation is None:
                continue
            allocations.append(allocation)
            remaining -= allocation.total
            capital_applied += allocation.applied_to_capital

        if remaining != ZERO:
            raise ConsistencyError(
                f"Payment {payment.id} left {remaining} unallocated",
                payment_id=payment.id, amount=remaining
            )
        check_payment(payment, allocations)

        loan.remaining_balance -= capital_applied
        loan.next_due_date = self.lifecycle.next_due_date(uow, loan)
        loan.touch()
        uow.repos.loans.save(loan)
        self.lifecycle.evaluate_status(uow, loan, payment_date)

        log_action(
            self.logger, "info", f"Payment {payment.id} allocated to loan {loan.id}",
            user_id=recorded_by_user_id, action="allocate_payment", resource=f"loan:{loan.id}",
            extra={
                "amount": str(amount),
                "installments": len(allocations),
                "capital": str(capital_applied),
                "remaining_balance": str(loan.remaining_balance),
                "status": loan.status.value
            }
        )
        return AllocationResult(
            payment=payment,
            allocations=allocations,
            loan=loan,
            changes=diff_records(before, loan)
        )

    def _settle_installment(self, uow: UnitOfWork, payment: Payment, installment: Installment,
                            available: Decimal) -> Optional[PaymentAllocation]:
        """Apply up to ``available`` to one installment: late fee, interest, capital"""
        remaining = available
        late_fee = ZERO
        moratory_id = None

        for moratory in self.accrual.open_records(uow, installment.id):
            if remaining == ZERO:
                break
            take = min(remaining, moratory.outstanding)
            moratory.paid_amount += take
            if moratory.outstanding == ZERO:
                moratory.status = MoratoryStatus.PAID
            else:
                moratory.status = MoratoryStatus.PARTIALLY_PAID
            moratory.touch()
            uow.repos.moratory_interests.save(moratory)
            late_fee += take
            remaining -= take
            moratory_id = moratory_id or moratory.id

        interest = min(remaining, installment.outstanding_interest)
        remaining -= interest
        capital = min(remaining, installment.outstanding_capital)
        remaining -= capital

        if late_fee + interest + capital == ZERO:
            return None

        if interest or capital:
            installment.paid_interest += interest
            installment.paid_capital += capital
            installment.paid_amount = installment.paid_capital + installment.paid_interest
            installment.is_paid = installment.paid_amount >= installment.total_amount
            if installment.is_paid:
                installment.paid_at = payment.payment_date
            installment.status = LoanLifecycle.installment_status_after_payment(
                installment, payment.payment_date
            )
            installment.touch()
            uow.repos.installments.save(installment)

        now = utc_now()
        allocation = PaymentAllocation(
            id=new_id(),
            created_at=now,
            updated_at=now,
            payment_id=payment.id,
            installment_id=installment.id,
            loan_id=installment.loan_id,
            applied_to_capital=capital,
            applied_to_interest=interest,
            applied_to_late_fee=late_fee,
            moratory_id=moratory_id
        )
        uow.repos.allocations.save(allocation)
        return allocation
