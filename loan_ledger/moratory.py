"""
Moratory Interest Module

Late-fee accrual for overdue installments. The fee is a point-in-time
recomputation from the days late, never an accumulator over earlier
accruals, so evaluating the same installment twice on the same date gives
the same amount.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import date
from typing import List, Optional

from .logging_config import get_logger, log_action
from .models import (
    Installment, InstallmentStatus, Loan, MoratoryInterest, MoratoryStatus,
    new_id, utc_now
)
from .money import ZERO, normalize_rate, quantize, sum_amounts
from .reference import ReferenceData
from .unit_of_work import UnitOfWork


class AccrualStrategy(ABC):
    """Formula turning an overdue installment into a late-fee amount"""

    @abstractmethod
    def compute(self, installment: Installment, rate: Decimal, days_late: int) -> Decimal:
        """Unrounded late fee for the installment; rate is already a fraction"""
        pass


class SimpleDailyAccrual(AccrualStrategy):
    """unpaid installment amount * rate * days late, no compounding"""

    def compute(self, installment: Installment, rate: Decimal, days_late: int) -> Decimal:
        return installment.outstanding * rate * days_late


class MoratoryAccrualEngine:
    """
    Accrues moratory interest on overdue, unpaid installments.

    Only one open (not paid, not discounted) record exists per installment.
    A re-evaluation updates that record in place. Once a record is closed and
    the installment is still overdue, a later evaluation opens a new record
    for whatever the point-in-time fee exceeds the already-closed amounts by.
    """

    def __init__(self, strategy: Optional[AccrualStrategy] = None, decimal_places: int = 2,
                 rate_percent_threshold: Decimal = Decimal('1')):
        self.strategy = strategy or SimpleDailyAccrual()
        self.places = decimal_places
        self.rate_percent_threshold = rate_percent_threshold
        self.logger = get_logger("loan_ledger.moratory")

    def compute_amount(self, installment: Installment, penalty_rate: Decimal, as_of: date) -> Decimal:
        """Point-in-time fee as of a date; zero when the installment is not late"""
        days_late = (as_of - installment.due_date).days
        if days_late <= 0:
            return ZERO
        rate = normalize_rate(penalty_rate, self.rate_percent_threshold)
        return quantize(self.strategy.compute(installment, rate, days_late), self.places)

    def accrue(self, uow: UnitOfWork, installment: Installment, as_of: date,
               penalty_rate: Optional[Decimal]) -> Optional[MoratoryInterest]:
        """
        Evaluate one installment as of a date.

        Returns the open moratory record after the evaluation, or None when
        the installment is not overdue or nothing is owed beyond what was
        already closed. Marks the installment overdue but never touches its
        capital or interest amounts.
        """
        if not installment.is_overdue(as_of):
            return None

        if installment.status != InstallmentStatus.OVERDUE:
            installment.status = InstallmentStatus.OVERDUE
            installment.touch()
            uow.repos.installments.save(installment)

        if penalty_rate is None:
            return None

        days_late = (as_of - installment.due_date).days
        computed = self.compute_amount(installment, penalty_rate, as_of)

        records = uow.repos.installment_moratories(installment.id)
        closed_total = sum_amounts(m.amount for m in records if m.is_closed)
        open_records = [m for m in records if not m.is_closed]
        owed = computed - closed_total

        if open_records:
            record = open_records[-1]
            # Never shrink below what was already settled on the open record
            new_amount = max(owed, record.amount)
            if new_amount == record.amount and record.as_of_date == as_of:
                return record
            record.amount = new_amount
            record.days_late = days_late
            record.as_of_date = as_of
            if record.paid_amount == ZERO and record.discounted_amount == ZERO:
                record.status = MoratoryStatus.UNPAID
            record.touch()
            uow.repos.moratory_interests.save(record)
            return record

        if owed <= ZERO:
            return None

        now = utc_now()
        record = MoratoryInterest(
            id=new_id(),
            created_at=now,
            updated_at=now,
            installment_id=installment.id,
            loan_id=installment.loan_id,
            amount=owed,
            days_late=days_late,
            as_of_date=as_of,
            status=MoratoryStatus.UNPAID
        )
        uow.repos.moratory_interests.save(record)

        log_action(
            self.logger, "info", f"Moratory interest opened for installment {installment.id}",
            action="accrue_moratory", resource=f"loan:{installment.loan_id}",
            extra={"moratory_id": record.id, "amount": str(owed), "days_late": days_late}
        )
        return record

    def accrue_loan(self, uow: UnitOfWork, loan: Loan, as_of: date) -> List[MoratoryInterest]:
        """Accrue every overdue installment of a loan; returns the open records"""
        penalty_rate = None
        if loan.penalty_rate_id:
            penalty_rate = ReferenceData(uow.repos).penalty_rate(loan.penalty_rate_id).value

        accrued = []
        for installment in uow.repos.loan_installments(loan.id):
            record = self.accrue(uow, installment, as_of, penalty_rate)
            if record is not None:
                accrued.append(record)
        return accrued

    @staticmethod
    def open_records(uow: UnitOfWork, installment_id: str) -> List[MoratoryInterest]:
        """Moratory records of an installment that still carry a balance"""
        return [
            m for m in uow.repos.installment_moratories(installment_id)
            if not m.is_closed and m.outstanding > ZERO
        ]
