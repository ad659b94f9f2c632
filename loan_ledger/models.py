"""
Ledger Records Module

Dataclass records for loans, installments, moratory interest, discounts,
payments and payment allocations, plus the read-only reference records the
ledger looks up (customers, rates, terms, frequencies, grace periods).
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Tuple
from enum import Enum
import uuid

from .money import ZERO
from .storage import StorageRecord


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoanType(Enum):
    """Supported loan products"""
    FIXED_FEES = "fixed_fees"            # Amortized fixed installments
    ONLY_INTERESTS = "only_interests"    # Interest each period, capital at the end


class LoanStatus(Enum):
    """Loan lifecycle states"""
    CREATED = "Created"
    UP_TO_DATE = "Up to Date"
    OVERDUE = "Overdue"
    PAID = "Paid"
    REFINANCED = "Refinanced"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = (LoanStatus.PAID, LoanStatus.REFINANCED, LoanStatus.CANCELLED)


class InstallmentStatus(Enum):
    """Installment states"""
    CREATED = "Created"            # Generated, nothing paid
    PENDING = "Pending"            # Partially paid
    OVERDUE = "Overdue"            # Past due and unpaid
    PAID = "Paid"                  # Paid on or before due date
    OVERDUE_PAID = "Overdue Paid"  # Paid after due date, late fee settled


class MoratoryStatus(Enum):
    """Moratory interest states"""
    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"
    DISCOUNTED = "Discounted"
    PARTIALLY_DISCOUNTED = "Partially Discounted"


CLOSED_MORATORY_STATUSES = (MoratoryStatus.PAID, MoratoryStatus.DISCOUNTED)


@dataclass
class LedgerRecord(StorageRecord):
    """
    StorageRecord with typed round-tripping.

    Subclasses list their Decimal, date and Enum fields so from_dict can
    rebuild them from the stored strings.
    """
    _decimal_fields: ClassVar[Tuple[str, ...]] = ()
    _date_fields: ClassVar[Tuple[str, ...]] = ()
    _enum_fields: ClassVar[Dict[str, type]] = {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerRecord':
        data = dict(data)
        for name in cls._decimal_fields:
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        for name in cls._date_fields:
            if isinstance(data.get(name), str):
                data[name] = date.fromisoformat(data[name])
        for name, enum_type in cls._enum_fields.items():
            if data.get(name) is not None and not isinstance(data[name], enum_type):
                data[name] = enum_type(data[name])
        return super().from_dict(data)


@dataclass
class Customer(StorageRecord):
    """Borrower reference record"""
    name: str
    is_active: bool = True


@dataclass
class InterestRate(LedgerRecord):
    """Per-period interest rate (percentage when above the threshold)"""
    _decimal_fields = ('value',)

    name: str = ""
    value: Decimal = ZERO
    is_active: bool = True


@dataclass
class PenaltyRate(LedgerRecord):
    """Per-day moratory rate (percentage when above the threshold)"""
    _decimal_fields = ('value',)

    name: str = ""
    value: Decimal = ZERO
    is_active: bool = True


@dataclass
class Term(StorageRecord):
    """Named count of installments"""
    value: int
    is_active: bool = True


@dataclass
class PaymentFrequency(StorageRecord):
    """Payment frequency catalogue entry (Daily, Weekly, Biweekly, Monthly)"""
    name: str
    is_active: bool = True


@dataclass
class GracePeriod(StorageRecord):
    """Capital deferral window for interest-only loans"""
    name: str
    days: int
    is_active: bool = True


@dataclass
class DiscountType(StorageRecord):
    """Discount classification"""
    name: str
    description: str = ""
    is_active: bool = True


@dataclass
class Loan(LedgerRecord):
    """Loan with its terms and current balance"""
    _decimal_fields = ('loan_amount', 'remaining_balance')
    _date_fields = ('start_date', 'grace_end_date', 'next_due_date', 'closed_on')
    _enum_fields = {'loan_type': LoanType, 'status': LoanStatus}

    customer_id: str = ""
    loan_amount: Decimal = ZERO              # Capital at origination, immutable
    remaining_balance: Decimal = ZERO        # Unpaid capital
    interest_rate_id: str = ""
    payment_frequency_id: str = ""
    loan_type: LoanType = LoanType.FIXED_FEES
    status: LoanStatus = LoanStatus.CREATED
    start_date: Optional[date] = None
    penalty_rate_id: Optional[str] = None
    term_id: Optional[str] = None
    installment_count: int = 0               # Zero for only_interests
    grace_period_id: Optional[str] = None
    grace_end_date: Optional[date] = None
    next_due_date: Optional[date] = None
    is_active: bool = True
    refinanced_from_id: Optional[str] = None
    refinanced_to_id: Optional[str] = None
    closed_on: Optional[date] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def capital_paid(self) -> Decimal:
        return self.loan_amount - self.remaining_balance


@dataclass
class Installment(LedgerRecord):
    """One scheduled obligation: capital + interest due on a date"""
    _decimal_fields = (
        'capital_amount', 'interest_amount', 'total_amount',
        'paid_amount', 'paid_capital', 'paid_interest'
    )
    _date_fields = ('due_date', 'paid_at')
    _enum_fields = {'status': InstallmentStatus}

    loan_id: str = ""
    sequence: int = 0
    due_date: Optional[date] = None
    capital_amount: Decimal = ZERO
    interest_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    paid_capital: Decimal = ZERO
    paid_interest: Decimal = ZERO
    is_paid: bool = False
    status: InstallmentStatus = InstallmentStatus.CREATED
    is_active: bool = True
    paid_at: Optional[date] = None

    @property
    def outstanding_interest(self) -> Decimal:
        return self.interest_amount - self.paid_interest

    @property
    def outstanding_capital(self) -> Decimal:
        return self.capital_amount - self.paid_capital

    @property
    def outstanding(self) -> Decimal:
        return self.total_amount - self.paid_amount

    def is_overdue(self, as_of: date) -> bool:
        return self.is_active and not self.is_paid and self.due_date < as_of


@dataclass
class MoratoryInterest(LedgerRecord):
    """Late fee accrued on an overdue installment"""
    _decimal_fields = ('amount', 'paid_amount', 'discounted_amount')
    _date_fields = ('as_of_date',)
    _enum_fields = {'status': MoratoryStatus}

    installment_id: str = ""
    loan_id: str = ""
    amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    discounted_amount: Decimal = ZERO
    days_late: int = 0
    as_of_date: Optional[date] = None
    status: MoratoryStatus = MoratoryStatus.UNPAID

    @property
    def outstanding(self) -> Decimal:
        return self.amount - self.paid_amount - self.discounted_amount

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_MORATORY_STATUSES


@dataclass
class Discount(LedgerRecord):
    """Reduction of a moratory debt"""
    _decimal_fields = ('amount',)

    amount: Decimal = ZERO
    discount_type_id: Optional[str] = None
    description: str = ""
    moratory_id: Optional[str] = None
    installment_id: Optional[str] = None
    loan_id: Optional[str] = None
    created_by: Optional[str] = None
    is_active: bool = True


@dataclass
class Payment(LedgerRecord):
    """Money collected against a loan"""
    _decimal_fields = ('amount',)
    _date_fields = ('payment_date',)

    loan_id: str = ""
    amount: Decimal = ZERO
    payment_date: Optional[date] = None
    payment_type_id: str = "regular"
    payment_method_id: str = "cash"
    recorded_by_user_id: Optional[str] = None
    collector_id: Optional[str] = None


@dataclass
class PaymentAllocation(LedgerRecord):
    """Portion of a payment applied to one installment"""
    _decimal_fields = ('applied_to_capital', 'applied_to_interest', 'applied_to_late_fee')

    payment_id: str = ""
    installment_id: str = ""
    loan_id: str = ""
    applied_to_capital: Decimal = ZERO
    applied_to_interest: Decimal = ZERO
    applied_to_late_fee: Decimal = ZERO
    moratory_id: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.applied_to_capital + self.applied_to_interest + self.applied_to_late_fee

