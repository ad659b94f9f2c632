"""
Loan Lifecycle Module

State machine for loans:

    Created -> Up to Date <-> Overdue -> Paid | Refinanced | Cancelled

Paid, Refinanced and Cancelled are terminal for mutation. Creation writes the
loan and its whole schedule inside the caller's unit of work.
"""

from decimal import Decimal
from datetime import date, timedelta
from typing import List, Optional, Tuple

from .exceptions import (
    GracePeriodNotApplicable, LedgerValidationError, LoanAlreadyCancelled,
    LoanAlreadyCompleted, LoanAlreadyTerminal, LoanInactive, LoanNotFound
)
from .logging_config import get_logger, log_action
from .models import (
    Installment, InstallmentStatus, Loan, LoanStatus, LoanType, new_id, utc_now
)
from .money import ZERO, has_valid_precision, to_decimal
from .reference import ReferenceData
from .schedule import ScheduleGenerator, advance, parse_loan_type
from .unit_of_work import UnitOfWork


class LoanLifecycle:
    """Creates loans, re-evaluates their status and cancels them"""

    def __init__(self, schedule: ScheduleGenerator, decimal_places: int = 2):
        self.schedule = schedule
        self.places = decimal_places
        self.logger = get_logger("loan_ledger.lifecycle")

    def load(self, uow: UnitOfWork, loan_id: str, lock: bool = True) -> Loan:
        """Load a loan, taking its writer lock first"""
        if lock:
            uow.lock_loan(loan_id)
        loan = uow.repos.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def ensure_mutable(self, loan: Loan) -> None:
        """Reject payments and schedule changes on terminal or inactive loans"""
        if loan.status in (LoanStatus.CANCELLED, LoanStatus.REFINANCED) or not loan.is_active:
            raise LoanInactive(
                f"Loan {loan.id} is {loan.status.value} and no longer active",
                loan_id=loan.id, status=loan.status.value
            )
        if loan.status == LoanStatus.PAID:
            raise LoanAlreadyCompleted(
                f"Loan {loan.id} is already paid", loan_id=loan.id, status=loan.status.value
            )

    def create(self, uow: UnitOfWork, customer_id: str, loan_amount: Decimal,
               interest_rate_id: str, payment_frequency_id: str, loan_type,
               start_date: date, penalty_rate_id: Optional[str] = None,
               term_id: Optional[str] = None, grace_period_id: Optional[str] = None,
               installment_count: Optional[int] = None,
               refinanced_from_id: Optional[str] = None,
               created_by: Optional[str] = None) -> Tuple[Loan, List[Installment]]:
        """
        Create a loan and its schedule.

        All references are resolved before anything is written; the loan and
        its installments land in the same unit of work.

        Raises:
            UnsupportedLoanType: loan type is not fixed_fees or only_interests
            GracePeriodNotApplicable: grace period supplied for fixed_fees
            ReferenceNotFound: a referenced catalogue entry is missing or inactive
            LedgerValidationError: amount not positive or too precise
        """
        loan_type = parse_loan_type(loan_type)
        loan_amount = to_decimal(loan_amount)
        if loan_amount <= ZERO:
            raise LedgerValidationError(
                "Loan amount must be positive", field="loan_amount", amount=loan_amount
            )
        if not has_valid_precision(loan_amount, self.places):
            raise LedgerValidationError(
                f"Loan amount has more than {self.places} decimal places",
                field="loan_amount", amount=loan_amount
            )
        if start_date is None:
            raise LedgerValidationError("Start date is required", field="start_date")

        refs = ReferenceData(uow.repos)
        refs.customer(customer_id)
        rate = refs.interest_rate(interest_rate_id)
        frequency = refs.payment_frequency(payment_frequency_id)
        if penalty_rate_id is not None:
            refs.penalty_rate(penalty_rate_id)

        grace = None
        if grace_period_id is not None:
            if loan_type != LoanType.ONLY_INTERESTS:
                raise GracePeriodNotApplicable(
                    "Grace periods only apply to only_interests loans",
                    field="grace_period_id", loan_type=loan_type.value
                )
            grace = refs.grace_period(grace_period_id)

        count = installment_count
        if loan_type == LoanType.FIXED_FEES and count is None and term_id is not None:
            count = refs.term(term_id).value
        elif term_id is not None:
            refs.term(term_id)

        kind = self.schedule.resolve_frequency(frequency.name)
        now = utc_now()
        loan = Loan(
            id=new_id(),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            loan_amount=loan_amount,
            remaining_balance=loan_amount,
            interest_rate_id=interest_rate_id,
            payment_frequency_id=payment_frequency_id,
            loan_type=loan_type,
            status=LoanStatus.CREATED,
            start_date=start_date,
            penalty_rate_id=penalty_rate_id,
            term_id=term_id,
            grace_period_id=grace_period_id,
            grace_end_date=start_date + timedelta(days=grace.days) if grace else None,
            refinanced_from_id=refinanced_from_id
        )

        installments = self.schedule.generate(
            uow, loan, count, advance(start_date, kind, 1), frequency.name, rate.value
        )
        uow.repos.loans.save(loan)

        log_action(
            self.logger, "info", f"Loan {loan.id} created",
            user_id=created_by, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "customer_id": customer_id,
                "loan_amount": str(loan_amount),
                "loan_type": loan_type.value,
                "installments": len(installments),
                "refinanced_from_id": refinanced_from_id
            }
        )
        return loan, installments

    def evaluate_status(self, uow: UnitOfWork, loan: Loan, as_of: date) -> LoanStatus:
        """
        Recompute the status of a live loan from its installments.

        Refinanced and cancelled loans keep their status. The loan is saved
        only when the status changes.
        """
        if loan.status in (LoanStatus.REFINANCED, LoanStatus.CANCELLED):
            return loan.status

        installments = uow.repos.loan_installments(loan.id)
        if loan.remaining_balance == ZERO and all(i.is_paid for i in installments):
            new_status = LoanStatus.PAID
        elif any(i.is_overdue(as_of) for i in installments):
            new_status = LoanStatus.OVERDUE
        else:
            new_status = LoanStatus.UP_TO_DATE

        if new_status != loan.status:
            previous = loan.status
            loan.status = new_status
            if new_status == LoanStatus.PAID:
                loan.closed_on = as_of
                loan.next_due_date = None
            loan.touch()
            uow.repos.loans.save(loan)
            log_action(
                self.logger, "info", f"Loan {loan.id} status {previous.value} -> {new_status.value}",
                action="evaluate_status", resource=f"loan:{loan.id}",
                extra={"from": previous.value, "to": new_status.value, "as_of": as_of.isoformat()}
            )
        return loan.status

    def cancel(self, uow: UnitOfWork, loan: Loan, as_of: date,
               cancelled_by: Optional[str] = None) -> Loan:
        """
        Cancel a live loan with capital still owed.

        Unpaid installments are deactivated so they no longer count as
        obligations; paid ones stay as history.
        """
        if loan.status == LoanStatus.PAID:
            raise LoanAlreadyCompleted(
                f"Loan {loan.id} is already paid and cannot be cancelled", loan_id=loan.id
            )
        if loan.status == LoanStatus.CANCELLED:
            raise LoanAlreadyCancelled(f"Loan {loan.id} is already cancelled", loan_id=loan.id)
        if loan.status == LoanStatus.REFINANCED or not loan.is_active:
            raise LoanAlreadyTerminal(
                f"Loan {loan.id} is {loan.status.value} and cannot be cancelled",
                loan_id=loan.id, status=loan.status.value
            )
        if loan.remaining_balance <= ZERO:
            raise LoanAlreadyCompleted(
                f"Loan {loan.id} has no remaining balance to cancel", loan_id=loan.id
            )

        for installment in uow.repos.loan_installments(loan.id):
            if not installment.is_paid:
                installment.is_active = False
                installment.touch()
                uow.repos.installments.save(installment)

        previous = loan.status
        loan.status = LoanStatus.CANCELLED
        loan.is_active = False
        loan.closed_on = as_of
        loan.next_due_date = None
        loan.touch()
        uow.repos.loans.save(loan)

        log_action(
            self.logger, "info", f"Loan {loan.id} cancelled",
            user_id=cancelled_by, action="cancel_loan", resource=f"loan:{loan.id}",
            extra={"from": previous.value, "remaining_balance": str(loan.remaining_balance)}
        )
        return loan

    def next_due_date(self, uow: UnitOfWork, loan: Loan) -> Optional[date]:
        """Earliest unpaid due date; interest-only loans keep their own cycle date"""
        if loan.loan_type == LoanType.ONLY_INTERESTS:
            return loan.next_due_date
        unpaid = [i for i in uow.repos.loan_installments(loan.id) if not i.is_paid]
        return unpaid[0].due_date if unpaid else None

    @staticmethod
    def installment_status_after_payment(installment: Installment, payment_date: date) -> InstallmentStatus:
        if installment.is_paid:
            if installment.status == InstallmentStatus.OVERDUE or payment_date > installment.due_date:
                return InstallmentStatus.OVERDUE_PAID
            return InstallmentStatus.PAID
        if installment.is_overdue(payment_date):
            return InstallmentStatus.OVERDUE
        return InstallmentStatus.PENDING
