"""
Repository Module

Typed repositories over a StorageInterface. The set of persisted entity
kinds is closed: every kind is an EntityKind member bound to its table and
record class, so there is no lookup of persistence delegates by free-form
model name.
"""

from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from .models import (
    Customer, InterestRate, PenaltyRate, Term, PaymentFrequency, GracePeriod,
    DiscountType, Loan, Installment, MoratoryInterest, Discount, Payment,
    PaymentAllocation
)
from .storage import StorageInterface, StorageRecord


R = TypeVar('R', bound=StorageRecord)


class EntityKind(Enum):
    """Persisted entity kinds with their table and record class"""
    CUSTOMER = ("customers", Customer)
    INTEREST_RATE = ("interest_rates", InterestRate)
    PENALTY_RATE = ("penalty_rates", PenaltyRate)
    TERM = ("terms", Term)
    PAYMENT_FREQUENCY = ("payment_frequencies", PaymentFrequency)
    GRACE_PERIOD = ("grace_periods", GracePeriod)
    DISCOUNT_TYPE = ("discount_types", DiscountType)
    LOAN = ("loans", Loan)
    INSTALLMENT = ("installments", Installment)
    MORATORY_INTEREST = ("moratory_interests", MoratoryInterest)
    DISCOUNT = ("discounts", Discount)
    PAYMENT = ("payments", Payment)
    PAYMENT_ALLOCATION = ("payment_allocations", PaymentAllocation)

    def __init__(self, table: str, record_type: type):
        self.table = table
        self.record_type = record_type


class Repository(Generic[R]):
    """Load/save records of one entity kind"""

    def __init__(self, storage: StorageInterface, kind: EntityKind):
        self.storage = storage
        self.kind = kind
        self.table = kind.table
        self.record_type: Type[R] = kind.record_type

    def get(self, record_id: str) -> Optional[R]:
        data = self.storage.load(self.table, record_id)
        if data:
            return self.record_type.from_dict(data)
        return None

    def save(self, record: R) -> R:
        self.storage.save(self.table, record.id, record.to_dict())
        return record

    def save_many(self, records: List[R]) -> List[R]:
        for record in records:
            self.save(record)
        return records

    def delete(self, record_id: str) -> bool:
        return self.storage.delete(self.table, record_id)

    def find(self, order_by: Optional[Callable[[R], Any]] = None, **filters: Any) -> List[R]:
        records = [self.record_type.from_dict(data) for data in self.storage.find(self.table, filters)]
        if order_by is not None:
            records.sort(key=order_by)
        return records

    def all(self) -> List[R]:
        return [self.record_type.from_dict(data) for data in self.storage.load_all(self.table)]

    def count(self) -> int:
        return self.storage.count(self.table)


class Repositories:
    """All repositories bound to one storage backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._by_kind: Dict[EntityKind, Repository] = {
            kind: Repository(storage, kind) for kind in EntityKind
        }

    def __getitem__(self, kind: EntityKind) -> Repository:
        return self._by_kind[kind]

    @property
    def customers(self) -> Repository[Customer]:
        return self._by_kind[EntityKind.CUSTOMER]

    @property
    def interest_rates(self) -> Repository[InterestRate]:
        return self._by_kind[EntityKind.INTEREST_RATE]

    @property
    def penalty_rates(self) -> Repository[PenaltyRate]:
        return self._by_kind[EntityKind.PENALTY_RATE]

    @property
    def terms(self) -> Repository[Term]:
        return self._by_kind[EntityKind.TERM]

    @property
    def payment_frequencies(self) -> Repository[PaymentFrequency]:
        return self._by_kind[EntityKind.PAYMENT_FREQUENCY]

    @property
    def grace_periods(self) -> Repository[GracePeriod]:
        return self._by_kind[EntityKind.GRACE_PERIOD]

    @property
    def discount_types(self) -> Repository[DiscountType]:
        return self._by_kind[EntityKind.DISCOUNT_TYPE]

    @property
    def loans(self) -> Repository[Loan]:
        return self._by_kind[EntityKind.LOAN]

    @property
    def installments(self) -> Repository[Installment]:
        return self._by_kind[EntityKind.INSTALLMENT]

    @property
    def moratory_interests(self) -> Repository[MoratoryInterest]:
        return self._by_kind[EntityKind.MORATORY_INTEREST]

    @property
    def discounts(self) -> Repository[Discount]:
        return self._by_kind[EntityKind.DISCOUNT]

    @property
    def payments(self) -> Repository[Payment]:
        return self._by_kind[EntityKind.PAYMENT]

    @property
    def allocations(self) -> Repository[PaymentAllocation]:
        return self._by_kind[EntityKind.PAYMENT_ALLOCATION]

    def loan_installments(self, loan_id: str, active_only: bool = True) -> List[Installment]:
        """Installments of a loan in due-date order"""
        filters = {"loan_id": loan_id}
        if active_only:
            filters["is_active"] = True
        return self.installments.find(order_by=lambda i: (i.due_date, i.sequence), **filters)

    def installment_moratories(self, installment_id: str) -> List[MoratoryInterest]:
        """Moratory records of an installment, oldest first"""
        return self.moratory_interests.find(
            order_by=lambda m: m.created_at, installment_id=installment_id
        )
