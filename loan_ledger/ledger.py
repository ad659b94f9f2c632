"""
Loan Ledger Module

LoanLedger wires the schedule, accrual, discount, allocation, lifecycle and
refinance engines to one storage backend. Every mutating operation runs in a
UnitOfWork; pass ``uow=`` to compose several operations inside one caller
transaction, otherwise each call opens and commits its own.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional, Union

from .allocation import AllocationResult, PaymentAllocator
from .changes import FieldChange, diff_records
from .config import LedgerConfig, get_config
from .discounts import DiscountApplier
from .exceptions import (
    BusinessRuleError, GracePeriodActive, LoanNotFound, MoratoryInterestNotFound, ScheduleLocked,
    UnsupportedLoanType
)
from .invariants import check_loan
from .lifecycle import LoanLifecycle
from .logging_config import get_logger, log_action
from .models import (
    Customer, Discount, GracePeriod, Installment, InterestRate, Loan, LoanStatus,
    LoanType, MoratoryInterest, Payment, PaymentAllocation, PaymentFrequency,
    PenaltyRate, Term, new_id, utc_now
)
from .moratory import AccrualStrategy, MoratoryAccrualEngine
from .money import ZERO, sum_amounts, to_decimal
from .reference import ReferenceData, seed_reference_data
from .refinance import RefinanceEngine, RefinanceResult
from .repositories import EntityKind, Repositories
from .schedule import InstallmentCountPolicy, ScheduleGenerator, advance, policy_from_config
from .schemas import (
    CreateLoanParams, DiscountParams, PaymentParams, RefinanceParams, parse_params
)
from .storage import StorageInterface, create_storage
from .unit_of_work import LoanLockManager, UnitOfWork


@dataclass
class LoanCreated:
    loan: Loan
    installments: List[Installment]
    changes: List[FieldChange] = field(default_factory=list)


@dataclass
class DiscountResult:
    discount: Discount
    moratory: MoratoryInterest
    changes: List[FieldChange] = field(default_factory=list)


@dataclass
class LoanStatement:
    """Outstanding position of one loan"""
    loan: Loan
    outstanding_capital: Decimal
    outstanding_interest: Decimal
    outstanding_late_fee: Decimal
    total_paid: Decimal
    overdue_installments: int
    next_due_date: Optional[date]

    @property
    def total_outstanding(self) -> Decimal:
        return self.outstanding_capital + self.outstanding_interest + self.outstanding_late_fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan.id,
            "status": self.loan.status.value,
            "loan_amount": str(self.loan.loan_amount),
            "remaining_balance": str(self.loan.remaining_balance),
            "outstanding_capital": str(self.outstanding_capital),
            "outstanding_interest": str(self.outstanding_interest),
            "outstanding_late_fee": str(self.outstanding_late_fee),
            "total_outstanding": str(self.total_outstanding),
            "total_paid": str(self.total_paid),
            "overdue_installments": self.overdue_installments,
            "next_due_date": self.next_due_date.isoformat() if self.next_due_date else None,
        }


class LoanLedger:
    """
    Loan ledger engine facade.

    Thread-safe: operations on the same loan serialize on its writer lock,
    operations on different loans run independently.
    """

    def __init__(self, storage: Optional[StorageInterface] = None,
                 cfg: Optional[LedgerConfig] = None,
                 accrual_strategy: Optional[AccrualStrategy] = None,
                 count_policy: Optional[InstallmentCountPolicy] = None):
        self.config = cfg or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, self.config.lock_timeout_seconds
        )
        self.locks = LoanLockManager(self.config.lock_timeout_seconds)
        self.repos = Repositories(self.storage)

        places = self.config.decimal_places
        threshold = Decimal(self.config.rate_percent_threshold)
        self.schedule = ScheduleGenerator(
            count_policy or policy_from_config(self.config), places, threshold
        )
        self.accrual = MoratoryAccrualEngine(accrual_strategy, places, threshold)
        self.discounts = DiscountApplier(places)
        self.lifecycle = LoanLifecycle(self.schedule, places)
        self.allocator = PaymentAllocator(
            self.lifecycle, self.accrual, self.config.accrue_on_payment, places
        )
        self.refinancer = RefinanceEngine(self.lifecycle)
        self.logger = get_logger("loan_ledger.ledger")

    def unit_of_work(self) -> UnitOfWork:
        """New transaction context bound to this ledger's storage and locks"""
        return UnitOfWork(self.storage, self.locks, self.repos)

    def _work(self, uow: Optional[UnitOfWork]) -> UnitOfWork:
        return uow if uow is not None else self.unit_of_work()

    # Reference data

    def seed_reference_data(self, uow: Optional[UnitOfWork] = None) -> Dict[str, List[str]]:
        with self._work(uow) as work:
            return seed_reference_data(work.repos)

    def _add_reference(self, kind: EntityKind, record, uow: Optional[UnitOfWork]):
        with self._work(uow) as work:
            return work.repos[kind].save(record)

    def add_customer(self, name: str, uow: Optional[UnitOfWork] = None) -> Customer:
        now = utc_now()
        return self._add_reference(EntityKind.CUSTOMER, Customer(id=new_id(), created_at=now, updated_at=now, name=name), uow)

    def add_interest_rate(self, name: str, value, uow: Optional[UnitOfWork] = None) -> InterestRate:
        now = utc_now()
        return self._add_reference(EntityKind.INTEREST_RATE, InterestRate(
            id=new_id(), created_at=now, updated_at=now, name=name, value=to_decimal(value)
        ), uow)

    def add_penalty_rate(self, name: str, value, uow: Optional[UnitOfWork] = None) -> PenaltyRate:
        now = utc_now()
        return self._add_reference(EntityKind.PENALTY_RATE, PenaltyRate(
            id=new_id(), created_at=now, updated_at=now, name=name, value=to_decimal(value)
        ), uow)

    def add_term(self, value: int, uow: Optional[UnitOfWork] = None) -> Term:
        now = utc_now()
        return self._add_reference(EntityKind.TERM, Term(id=new_id(), created_at=now, updated_at=now, value=value), uow)

    def add_payment_frequency(self, name: str, uow: Optional[UnitOfWork] = None) -> PaymentFrequency:
        now = utc_now()
        return self._add_reference(
            EntityKind.PAYMENT_FREQUENCY, PaymentFrequency(id=new_id(), created_at=now, updated_at=now, name=name), uow
        )

    def add_grace_period(self, name: str, days: int, uow: Optional[UnitOfWork] = None) -> GracePeriod:
        now = utc_now()
        return self._add_reference(
            EntityKind.GRACE_PERIOD, GracePeriod(id=new_id(), created_at=now, updated_at=now, name=name, days=days), uow
        )

    # Loan operations

    def create_loan(self, params: Union[CreateLoanParams, Dict[str, Any]],
                    uow: Optional[UnitOfWork] = None) -> LoanCreated:
        """Create a loan together with its full schedule"""
        params = parse_params(CreateLoanParams, params)
        with self._work(uow) as work:
            loan, installments = self.lifecycle.create(
                work,
                customer_id=params.customer_id,
                loan_amount=params.loan_amount,
                interest_rate_id=params.interest_rate_id,
                payment_frequency_id=params.payment_frequency_id,
                loan_type=params.loan_type,
                start_date=params.start_date,
                penalty_rate_id=params.penalty_rate_id,
                term_id=params.term_id,
                grace_period_id=params.grace_period_id,
                installment_count=params.installment_count,
                created_by=params.created_by
            )
            check_loan(work, loan)
        return LoanCreated(loan=loan, installments=installments, changes=diff_records(None, loan))

    def register_payment(self, params: Union[PaymentParams, Dict[str, Any]],
                         uow: Optional[UnitOfWork] = None) -> AllocationResult:
        """Collect a payment and allocate it through the late fee, interest, capital waterfall"""
        params = parse_params(PaymentParams, params)
        with self._work(uow) as work:
            result = self.allocator.allocate(
                work,
                params.loan_id,
                params.amount,
                params.payment_date,
                payment_method_id=params.payment_method_id,
                payment_type_id=params.payment_type_id,
                recorded_by_user_id=params.recorded_by_user_id,
                collector_id=params.collector_id
            )
            check_loan(work, result.loan)
        return result

    def apply_discount(self, params: Union[DiscountParams, Dict[str, Any]],
                       uow: Optional[UnitOfWork] = None) -> DiscountResult:
        """Discount part or all of a moratory record's outstanding balance"""
        params = parse_params(DiscountParams, params)
        with self._work(uow) as work:
            moratory = work.repos.moratory_interests.get(params.moratory_id)
            if moratory is None:
                raise MoratoryInterestNotFound(params.moratory_id)
            loan = self.lifecycle.load(work, moratory.loan_id)
            # Re-read under the loan lock
            moratory = work.repos.moratory_interests.get(params.moratory_id)
            self.lifecycle.ensure_mutable(loan)
            if params.discount_type_id is not None:
                ReferenceData(work.repos).discount_type(params.discount_type_id)

            before = MoratoryInterest.from_dict(moratory.to_dict())
            discount = self.discounts.apply(
                work, moratory, params.amount,
                description=params.description,
                discount_type_id=params.discount_type_id,
                created_by=params.created_by
            )
            check_loan(work, loan)
        return DiscountResult(discount=discount, moratory=moratory, changes=diff_records(before, moratory))

    def accrue(self, loan_id: str, as_of: date, uow: Optional[UnitOfWork] = None) -> List[MoratoryInterest]:
        """Accrue moratory interest for one loan and re-evaluate its status"""
        with self._work(uow) as work:
            loan = self.lifecycle.load(work, loan_id)
            if not loan.is_active or loan.is_terminal:
                return []
            records = self.accrual.accrue_loan(work, loan, as_of)
            self.lifecycle.evaluate_status(work, loan, as_of)
            check_loan(work, loan)
        return records

    def sweep(self, as_of: date) -> Dict[str, int]:
        """
        Accrue every active loan as of a date.

        Each loan is evaluated in its own unit of work so a long sweep never
        holds more than one loan lock at a time.
        """
        summary = {"loans": 0, "moratory_records": 0, "overdue_loans": 0}
        loan_ids = [loan.id for loan in self.repos.loans.find(is_active=True)]
        for loan_id in loan_ids:
            records = self.accrue(loan_id, as_of)
            loan = self.repos.loans.get(loan_id)
            summary["loans"] += 1
            summary["moratory_records"] += len(records)
            if loan.status == LoanStatus.OVERDUE:
                summary["overdue_loans"] += 1

        log_action(
            self.logger, "info", "Moratory sweep completed", action="sweep",
            extra={"as_of": as_of.isoformat(), **summary}
        )
        return summary

    def refinance(self, loan_id: str, params: Union[RefinanceParams, Dict[str, Any]],
                  uow: Optional[UnitOfWork] = None) -> RefinanceResult:
        """Close a loan as refinanced and open its successor"""
        params = parse_params(RefinanceParams, params)
        with self._work(uow) as work:
            result = self.refinancer.refinance(
                work, loan_id, params.as_of,
                loan_amount=params.loan_amount,
                interest_rate_id=params.interest_rate_id,
                penalty_rate_id=params.penalty_rate_id,
                term_id=params.term_id,
                payment_frequency_id=params.payment_frequency_id,
                loan_type=params.loan_type,
                grace_period_id=params.grace_period_id,
                installment_count=params.installment_count,
                start_date=params.start_date,
                refinanced_by=params.refinanced_by
            )
            check_loan(work, result.old_loan)
            check_loan(work, result.new_loan)
        return result

    def cancel_loan(self, loan_id: str, as_of: date, cancelled_by: Optional[str] = None,
                    uow: Optional[UnitOfWork] = None) -> Loan:
        with self._work(uow) as work:
            loan = self.lifecycle.load(work, loan_id)
            self.lifecycle.cancel(work, loan, as_of, cancelled_by)
            check_loan(work, loan)
        return loan

    def regenerate_installments(self, loan_id: str, installment_count: Optional[int] = None,
                                uow: Optional[UnitOfWork] = None) -> List[Installment]:
        """
        Replace an untouched fixed-fee schedule.

        Refused with ScheduleLocked once the loan has any payment allocation
        or moratory record.
        """
        with self._work(uow) as work:
            loan = self.lifecycle.load(work, loan_id)
            self.lifecycle.ensure_mutable(loan)
            if loan.loan_type != LoanType.FIXED_FEES:
                raise UnsupportedLoanType(
                    "Only fixed_fees loans have a regenerable schedule",
                    loan_id=loan.id, loan_type=loan.loan_type.value
                )
            if work.repos.allocations.find(loan_id=loan.id) or \
                    work.repos.moratory_interests.find(loan_id=loan.id):
                raise ScheduleLocked(
                    f"Loan {loan.id} already has payments or late fees; schedule is locked",
                    loan_id=loan.id
                )

            refs = ReferenceData(work.repos)
            frequency = refs.payment_frequency(loan.payment_frequency_id)
            rate = refs.interest_rate(loan.interest_rate_id)
            if installment_count is None and loan.term_id is not None:
                installment_count = refs.term(loan.term_id).value

            for installment in work.repos.loan_installments(loan.id, active_only=False):
                work.repos.installments.delete(installment.id)

            kind = self.schedule.resolve_frequency(frequency.name)
            installments = self.schedule.generate(
                work, loan, installment_count, advance(loan.start_date, kind, 1),
                frequency.name, rate.value
            )
            loan.touch()
            work.repos.loans.save(loan)
            check_loan(work, loan)
        return installments

    def renew_interest_cycle(self, loan_id: str, as_of: date,
                             uow: Optional[UnitOfWork] = None) -> List[Installment]:
        """
        Post the interest-only obligation of every period reached by ``as_of``.

        Each posted period advances the loan's next due date, so calling again
        with the same date posts nothing.
        """
        with self._work(uow) as work:
            loan = self.lifecycle.load(work, loan_id)
            self.lifecycle.ensure_mutable(loan)
            self._require_interest_only(loan)

            refs = ReferenceData(work.repos)
            kind = self.schedule.resolve_frequency(refs.payment_frequency(loan.payment_frequency_id).name)
            rate = refs.interest_rate(loan.interest_rate_id).value
            existing = work.repos.loan_installments(loan.id, active_only=False)
            sequence = max((i.sequence for i in existing), default=0)

            posted = []
            while loan.next_due_date is not None and loan.next_due_date <= as_of:
                sequence += 1
                installment = self.schedule.build_interest_only(loan, sequence, loan.next_due_date, rate)
                work.repos.installments.save(installment)
                posted.append(installment)
                loan.next_due_date = advance(loan.next_due_date, kind, 1)

            if posted:
                loan.touch()
                work.repos.loans.save(loan)
                log_action(
                    self.logger, "info", f"Interest cycle renewed for loan {loan.id}",
                    action="renew_interest_cycle", resource=f"loan:{loan.id}",
                    extra={"periods": len(posted), "next_due_date": loan.next_due_date.isoformat()}
                )
            self.lifecycle.evaluate_status(work, loan, as_of)
            check_loan(work, loan)
        return posted

    def schedule_capital_payoff(self, loan_id: str, as_of: date,
                                uow: Optional[UnitOfWork] = None) -> Installment:
        """
        Post the final obligation of an interest-only loan: the whole remaining
        capital plus that period's interest, due on the next due date.
        """
        with self._work(uow) as work:
            loan = self.lifecycle.load(work, loan_id)
            self.lifecycle.ensure_mutable(loan)
            self._require_interest_only(loan)
            if loan.grace_end_date is not None and as_of < loan.grace_end_date:
                raise GracePeriodActive(
                    f"Loan {loan.id} is in its grace period until {loan.grace_end_date.isoformat()}",
                    loan_id=loan.id, limit=loan.grace_end_date.isoformat()
                )
            existing = work.repos.loan_installments(loan.id, active_only=False)
            if any(i.capital_amount > ZERO and not i.is_paid for i in existing):
                raise BusinessRuleError(
                    f"Loan {loan.id} already has a capital payoff scheduled", loan_id=loan.id
                )

            refs = ReferenceData(work.repos)
            kind = self.schedule.resolve_frequency(refs.payment_frequency(loan.payment_frequency_id).name)
            rate = refs.interest_rate(loan.interest_rate_id).value
            sequence = max((i.sequence for i in existing), default=0) + 1

            installment = self.schedule.build_interest_only(
                loan, sequence, loan.next_due_date, rate, include_capital=True
            )
            work.repos.installments.save(installment)
            loan.next_due_date = advance(installment.due_date, kind, 1)
            loan.touch()
            work.repos.loans.save(loan)

            log_action(
                self.logger, "info", f"Capital payoff scheduled for loan {loan.id}",
                action="schedule_capital_payoff", resource=f"loan:{loan.id}",
                extra={"capital": str(installment.capital_amount), "due_date": installment.due_date.isoformat()}
            )
            check_loan(work, loan)
        return installment

    @staticmethod
    def _require_interest_only(loan: Loan) -> None:
        if loan.loan_type != LoanType.ONLY_INTERESTS:
            raise UnsupportedLoanType(
                "Interest cycles only apply to only_interests loans",
                loan_id=loan.id, loan_type=loan.loan_type.value
            )

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.repos.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def get_installments(self, loan_id: str, active_only: bool = True) -> List[Installment]:
        return self.repos.loan_installments(loan_id, active_only=active_only)

    def get_payments(self, loan_id: str) -> List[Payment]:
        return self.repos.payments.find(order_by=lambda p: (p.payment_date, p.created_at), loan_id=loan_id)

    def get_allocations(self, payment_id: str) -> List[PaymentAllocation]:
        return self.repos.allocations.find(order_by=lambda a: a.created_at, payment_id=payment_id)

    def get_moratory_interests(self, loan_id: str) -> List[MoratoryInterest]:
        return self.repos.moratory_interests.find(order_by=lambda m: m.created_at, loan_id=loan_id)

    def get_discounts(self, loan_id: str) -> List[Discount]:
        return self.repos.discounts.find(order_by=lambda d: d.created_at, loan_id=loan_id)

    def find_overdue_loans(self, as_of: date) -> List[Loan]:
        """Live loans with at least one installment past due and unpaid; read-only"""
        overdue = []
        for loan in self.repos.loans.find(is_active=True):
            if loan.status == LoanStatus.PAID:
                continue
            if any(i.is_overdue(as_of) for i in self.repos.loan_installments(loan.id)):
                overdue.append(loan)
        return sorted(overdue, key=lambda l: l.created_at)

    def loan_statement(self, loan_id: str, as_of: Optional[date] = None) -> LoanStatement:
        """Outstanding capital, interest and late fees of a loan from stored records"""
        loan = self.get_loan(loan_id)
        installments = self.repos.loan_installments(loan.id)
        late_fee = sum_amounts(
            m.outstanding for m in self.get_moratory_interests(loan.id) if not m.is_closed
        )
        as_of = as_of or date.today()
        return LoanStatement(
            loan=loan,
            outstanding_capital=loan.remaining_balance,
            outstanding_interest=sum_amounts(i.outstanding_interest for i in installments),
            outstanding_late_fee=late_fee,
            total_paid=sum_amounts(p.amount for p in self.get_payments(loan.id)),
            overdue_installments=sum(1 for i in installments if i.is_overdue(as_of)),
            next_due_date=loan.next_due_date
        )
