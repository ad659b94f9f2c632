"""
Schedule Generation Module

Turns loan terms into installment obligations. Fixed-fee loans get a full
amortization table (declining-balance interest, equal capital split, rounding
remainder absorbed by the last installment). Interest-only loans get no table:
their next due date is set and renewed one period at a time.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_CEILING
from datetime import date, timedelta
from enum import Enum
from typing import List, Optional, Tuple, Union
import calendar

from .exceptions import LedgerValidationError, UnsupportedLoanType
from .logging_config import get_logger, log_action
from .models import (
    Installment, InstallmentStatus, Loan, LoanType, new_id, utc_now
)
from .money import ZERO, normalize_rate, quantize, to_decimal
from .unit_of_work import UnitOfWork


class FrequencyKind(Enum):
    """Supported payment frequencies and the name fragments that select them"""
    DAILY = ("DAILY", "DIARIA")
    WEEKLY = ("WEEKLY", "SEMANAL")
    BIWEEKLY = ("BIWEEKLY", "QUINCENAL")
    MONTHLY = ("MONTHLY", "MENSUAL")

    def __init__(self, *aliases: str):
        self.aliases = aliases

    @classmethod
    def from_name(cls, name: Optional[str]) -> Tuple['FrequencyKind', bool]:
        """
        Resolve a catalogue name to a frequency.

        Returns the kind and whether the monthly fallback was used. BIWEEKLY
        is tested before WEEKLY since its name contains the weekly fragment.
        """
        upper = (name or "").upper()
        for kind in (cls.DAILY, cls.BIWEEKLY, cls.WEEKLY, cls.MONTHLY):
            if any(alias in upper for alias in kind.aliases):
                return kind, False
        return cls.MONTHLY, True


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start_date: date, kind: FrequencyKind, periods: int = 1) -> date:
    """Move a date forward by a number of payment periods"""
    if kind == FrequencyKind.DAILY:
        return start_date + timedelta(days=periods)
    elif kind == FrequencyKind.WEEKLY:
        return start_date + timedelta(days=7 * periods)
    elif kind == FrequencyKind.BIWEEKLY:
        return start_date + timedelta(days=15 * periods)
    return add_months(start_date, periods)


def parse_loan_type(value: Union[LoanType, str]) -> LoanType:
    """Resolve a loan type, failing with UnsupportedLoanType for anything else"""
    if isinstance(value, LoanType):
        return value
    try:
        return LoanType(str(value).strip().lower())
    except ValueError:
        raise UnsupportedLoanType(
            f"Unsupported loan type: {value}", field="loan_type",
            supported=[t.value for t in LoanType]
        )


class InstallmentCountPolicy(ABC):
    """Installment count used when a fixed-fee loan is created without a term"""

    @abstractmethod
    def count_for(self, loan_amount: Decimal) -> int:
        pass


class CeilDivisionCountPolicy(InstallmentCountPolicy):
    """ceil(loan_amount / divisor); divisor defaults to 100"""

    def __init__(self, divisor: Decimal = Decimal('100')):
        divisor = to_decimal(divisor)
        if divisor <= ZERO:
            raise ValueError("Installment divisor must be positive")
        self.divisor = divisor

    def count_for(self, loan_amount: Decimal) -> int:
        return max(1, int((to_decimal(loan_amount) / self.divisor).to_integral_value(rounding=ROUND_CEILING)))


class FixedCountPolicy(InstallmentCountPolicy):
    """Same count for every loan"""

    def __init__(self, count: int = 12):
        if count < 1:
            raise ValueError("Installment count must be at least 1")
        self.count = count

    def count_for(self, loan_amount: Decimal) -> int:
        return self.count


def policy_from_config(cfg) -> InstallmentCountPolicy:
    if cfg.default_installment_policy == "fixed":
        return FixedCountPolicy(cfg.default_installment_count)
    if cfg.default_installment_policy == "ceil_division":
        return CeilDivisionCountPolicy(Decimal(cfg.installment_divisor))
    raise ValueError(f"Unknown installment policy: {cfg.default_installment_policy}")


class ScheduleGenerator:
    """
    Builds installment obligations for a loan.

    Interest per installment is simple interest on the capital still
    outstanding before that installment; capital is the outstanding capital
    split evenly over the installments left.
    """

    def __init__(self, count_policy: Optional[InstallmentCountPolicy] = None,
                 decimal_places: int = 2, rate_percent_threshold: Decimal = Decimal('1')):
        self.count_policy = count_policy or CeilDivisionCountPolicy()
        self.places = decimal_places
        self.rate_percent_threshold = rate_percent_threshold
        self.logger = get_logger("loan_ledger.schedule")

    def resolve_frequency(self, frequency_name: str) -> FrequencyKind:
        kind, fallback = FrequencyKind.from_name(frequency_name)
        if fallback:
            log_action(
                self.logger, "warning",
                f"Unrecognized payment frequency '{frequency_name}', using monthly",
                action="resolve_frequency", extra={"frequency": frequency_name}
            )
        return kind

    def periodic_rate(self, rate_value: Decimal) -> Decimal:
        return normalize_rate(rate_value, self.rate_percent_threshold)

    def installment_count_for(self, loan_amount: Decimal, explicit: Optional[int] = None) -> int:
        if explicit is not None:
            if explicit < 1:
                raise LedgerValidationError(
                    "Installment count must be at least 1", field="installment_count", value=explicit
                )
            return explicit
        return self.count_policy.count_for(loan_amount)

    def last_due_date(self, first_due_date: date, kind: FrequencyKind, installment_count: int) -> date:
        """Due date of the final installment; rejects schedules past the calendar's end"""
        try:
            return advance(first_due_date, kind, installment_count - 1)
        except (ValueError, OverflowError):
            raise LedgerValidationError(
                f"{installment_count} {kind.name.lower()} installments from "
                f"{first_due_date.isoformat()} run past {date.max.isoformat()}",
                field="installment_count", value=installment_count, limit=date.max.isoformat()
            )

    def build_fixed_fees(self, loan_id: str, loan_amount: Decimal, rate_value: Decimal,
                         installment_count: int, first_due_date: date,
                         frequency_name: str) -> List[Installment]:
        """Pure amortization table; nothing is persisted"""
        kind = self.resolve_frequency(frequency_name)
        self.last_due_date(first_due_date, kind, installment_count)
        rate = self.periodic_rate(rate_value)
        now = utc_now()

        remaining = quantize(loan_amount, self.places)
        installments = []
        for sequence in range(1, installment_count + 1):
            interest = quantize(remaining * rate, self.places)
            if sequence == installment_count:
                capital = remaining
            else:
                capital = quantize(remaining / (installment_count - sequence + 1), self.places)
            remaining = remaining - capital

            installments.append(Installment(
                id=new_id(),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                sequence=sequence,
                due_date=advance(first_due_date, kind, sequence - 1),
                capital_amount=capital,
                interest_amount=interest,
                total_amount=capital + interest,
                status=InstallmentStatus.CREATED
            ))
        return installments

    def generate(self, uow: UnitOfWork, loan: Loan, installment_count: Optional[int],
                 start_date: date, frequency_name: str, rate_value: Decimal) -> List[Installment]:
        """
        Create the loan's installments inside the caller's unit of work.

        start_date is the due date of the first installment. For interest-only
        loans no rows are created and the loan's next due date is set instead.
        """
        if not uow.active:
            raise LedgerValidationError("Schedule generation requires an active unit of work")

        loan_type = parse_loan_type(loan.loan_type)

        if loan_type == LoanType.ONLY_INTERESTS:
            loan.installment_count = 0
            loan.next_due_date = start_date
            return []

        count = self.installment_count_for(loan.loan_amount, installment_count)
        installments = self.build_fixed_fees(
            loan.id, loan.loan_amount, rate_value, count, start_date, frequency_name
        )
        uow.repos.installments.save_many(installments)

        loan.installment_count = count
        loan.next_due_date = installments[0].due_date

        log_action(
            self.logger, "info", f"Schedule generated for loan {loan.id}",
            action="generate_schedule", resource=f"loan:{loan.id}",
            extra={
                "installments": count,
                "first_due_date": installments[0].due_date.isoformat(),
                "last_due_date": installments[-1].due_date.isoformat(),
                "total_interest": str(sum((i.interest_amount for i in installments), ZERO))
            }
        )
        return installments

    def build_interest_only(self, loan: Loan, sequence: int, due_date: date,
                            rate_value: Decimal, include_capital: bool = False) -> Installment:
        """One interest-only period obligation; optionally carrying the whole capital"""
        rate = self.periodic_rate(rate_value)
        now = utc_now()
        interest = quantize(loan.remaining_balance * rate, self.places)
        capital = loan.remaining_balance if include_capital else ZERO
        return Installment(
            id=new_id(),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            sequence=sequence,
            due_date=due_date,
            capital_amount=capital,
            interest_amount=interest,
            total_amount=capital + interest,
            status=InstallmentStatus.CREATED
        )
