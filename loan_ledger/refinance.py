"""
Refinance Module

Closes a loan and opens its successor with new or inherited terms. Only the
monetary link carries over: the old loan's remaining balance becomes the new
loan's amount unless one is supplied. No installments or payments are copied.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import date
from typing import List, Optional

from .changes import FieldChange, diff_records
from .exceptions import LoanNotRefinanceable
from .lifecycle import LoanLifecycle
from .logging_config import get_logger, log_action
from .models import Installment, Loan, LoanStatus, LoanType
from .money import ZERO
from .schedule import parse_loan_type
from .unit_of_work import UnitOfWork


@dataclass
class RefinanceResult:
    old_loan: Loan
    new_loan: Loan
    installments: List[Installment]
    changes: List[FieldChange] = field(default_factory=list)


class RefinanceEngine:
    """Refinances loans inside one unit of work"""

    def __init__(self, lifecycle: LoanLifecycle):
        self.lifecycle = lifecycle
        self.logger = get_logger("loan_ledger.refinance")

    def refinance(self, uow: UnitOfWork, loan_id: str, as_of: date,
                  loan_amount: Optional[Decimal] = None,
                  interest_rate_id: Optional[str] = None,
                  penalty_rate_id: Optional[str] = None,
                  term_id: Optional[str] = None,
                  payment_frequency_id: Optional[str] = None,
                  loan_type=None,
                  grace_period_id: Optional[str] = None,
                  installment_count: Optional[int] = None,
                  start_date: Optional[date] = None,
                  refinanced_by: Optional[str] = None) -> RefinanceResult:
        """
        Close ``loan_id`` as Refinanced and open its successor.

        A fully paid loan can only be refinanced into a new amount.

        Raises:
            LoanNotFound: no such loan
            LoanNotRefinanceable: loan already cancelled, refinanced or inactive,
                or paid with no new amount
            GracePeriodNotApplicable: grace period for a fixed_fees successor
        """
        old = self.lifecycle.load(uow, loan_id)
        if old.status in (LoanStatus.REFINANCED, LoanStatus.CANCELLED) or not old.is_active:
            raise LoanNotRefinanceable(
                f"Loan {old.id} is {old.status.value} and cannot be refinanced",
                loan_id=old.id, status=old.status.value
            )
        if old.remaining_balance == ZERO and loan_amount is None:
            raise LoanNotRefinanceable(
                f"Loan {old.id} is paid off; refinancing it requires a new loan amount",
                loan_id=old.id, field="loan_amount"
            )
        before = Loan.from_dict(old.to_dict())

        new_type = parse_loan_type(loan_type) if loan_type is not None else old.loan_type
        if grace_period_id is None and new_type == LoanType.ONLY_INTERESTS:
            grace_period_id = old.grace_period_id
        if term_id is None and installment_count is None and new_type == old.loan_type:
            term_id = old.term_id

        new_loan, installments = self.lifecycle.create(
            uow,
            customer_id=old.customer_id,
            loan_amount=loan_amount if loan_amount is not None else old.remaining_balance,
            interest_rate_id=interest_rate_id or old.interest_rate_id,
            payment_frequency_id=payment_frequency_id or old.payment_frequency_id,
            loan_type=new_type,
            start_date=start_date or as_of,
            penalty_rate_id=penalty_rate_id or old.penalty_rate_id,
            term_id=term_id,
            grace_period_id=grace_period_id,
            installment_count=installment_count,
            refinanced_from_id=old.id,
            created_by=refinanced_by
        )

        for installment in uow.repos.loan_installments(old.id):
            if not installment.is_paid:
                installment.is_active = False
                installment.touch()
                uow.repos.installments.save(installment)

        old.status = LoanStatus.REFINANCED
        old.is_active = False
        old.refinanced_to_id = new_loan.id
        old.closed_on = as_of
        old.next_due_date = None
        old.touch()
        uow.repos.loans.save(old)

        log_action(
            self.logger, "info", f"Loan {old.id} refinanced into {new_loan.id}",
            user_id=refinanced_by, action="refinance_loan", resource=f"loan:{old.id}",
            extra={
                "new_loan_id": new_loan.id,
                "carried_balance": str(before.remaining_balance),
                "new_amount": str(new_loan.loan_amount)
            }
        )
        return RefinanceResult(
            old_loan=old,
            new_loan=new_loan,
            installments=installments,
            changes=diff_records(before, old) + diff_records(None, new_loan)
        )
