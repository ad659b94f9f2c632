"""
Reference Data Module

Read-only lookups for the catalogues a loan points at: customers, interest
and penalty rates, terms, payment frequencies, grace periods and discount
types. A reference that is missing or inactive fails before any mutation.
"""

from decimal import Decimal
from typing import Dict, List, Optional

from .exceptions import ReferenceNotFound
from .logging_config import get_logger
from .models import (
    Customer, InterestRate, PenaltyRate, Term, PaymentFrequency, GracePeriod,
    DiscountType, new_id, utc_now
)
from .repositories import EntityKind, Repositories


_KIND_LABELS = {
    EntityKind.CUSTOMER: "Customer",
    EntityKind.INTEREST_RATE: "InterestRate",
    EntityKind.PENALTY_RATE: "PenaltyRate",
    EntityKind.TERM: "Term",
    EntityKind.PAYMENT_FREQUENCY: "PaymentFrequency",
    EntityKind.GRACE_PERIOD: "GracePeriod",
    EntityKind.DISCOUNT_TYPE: "DiscountType",
}


class ReferenceData:
    """Active-reference lookups over the repositories"""

    def __init__(self, repos: Repositories):
        self.repos = repos

    def require(self, kind: EntityKind, reference_id: Optional[str]):
        """Load an active reference record or raise ReferenceNotFound"""
        label = _KIND_LABELS.get(kind, kind.name)
        if reference_id is None:
            raise ReferenceNotFound(label, None)
        record = self.repos[kind].get(reference_id)
        if record is None or not getattr(record, 'is_active', True):
            raise ReferenceNotFound(label, reference_id)
        return record

    def customer(self, customer_id: str) -> Customer:
        return self.require(EntityKind.CUSTOMER, customer_id)

    def interest_rate(self, rate_id: str) -> InterestRate:
        return self.require(EntityKind.INTEREST_RATE, rate_id)

    def penalty_rate(self, rate_id: str) -> PenaltyRate:
        return self.require(EntityKind.PENALTY_RATE, rate_id)

    def term(self, term_id: str) -> Term:
        return self.require(EntityKind.TERM, term_id)

    def payment_frequency(self, frequency_id: str) -> PaymentFrequency:
        return self.require(EntityKind.PAYMENT_FREQUENCY, frequency_id)

    def grace_period(self, grace_period_id: str) -> GracePeriod:
        return self.require(EntityKind.GRACE_PERIOD, grace_period_id)

    def discount_type(self, discount_type_id: str) -> DiscountType:
        return self.require(EntityKind.DISCOUNT_TYPE, discount_type_id)


def seed_reference_data(repos: Repositories) -> Dict[str, List[str]]:
    """
    Install the default catalogues and return the created ids per catalogue.

    Payment frequencies Daily/Weekly/Biweekly/Monthly, penalty rates of 2, 5
    and 10 percent, grace periods of 15 days and 1 to 12 months, terms of 1 to
    100 installments and the "Moratorios" discount type.
    """
    logger = get_logger("loan_ledger.reference")
    now = utc_now()
    created: Dict[str, List[str]] = {
        "payment_frequencies": [], "penalty_rates": [], "grace_periods": [],
        "terms": [], "discount_types": []
    }

    for name in ("Daily", "Weekly", "Biweekly", "Monthly"):
        record = PaymentFrequency(id=new_id(), created_at=now, updated_at=now, name=name)
        repos.payment_frequencies.save(record)
        created["payment_frequencies"].append(record.id)

    penalty_rates = [
        ("Maximum legal monthly moratory rate", Decimal('2.0')),
        ("Average informal lender moratory rate", Decimal('5.0')),
        ("High moratory rate", Decimal('10.0')),
    ]
    for name, value in penalty_rates:
        record = PenaltyRate(id=new_id(), created_at=now, updated_at=now, name=name, value=value)
        repos.penalty_rates.save(record)
        created["penalty_rates"].append(record.id)

    grace_periods = [("15 days", 15)] + [
        (f"{months} month{'s' if months > 1 else ''}", 30 * months) for months in range(1, 13)
    ]
    for name, days in grace_periods:
        record = GracePeriod(id=new_id(), created_at=now, updated_at=now, name=name, days=days)
        repos.grace_periods.save(record)
        created["grace_periods"].append(record.id)

    for value in range(1, 101):
        record = Term(id=new_id(), created_at=now, updated_at=now, value=value)
        repos.terms.save(record)
        created["terms"].append(record.id)

    discount_type = DiscountType(
        id=new_id(), created_at=now, updated_at=now,
        name="Moratorios", description="Moratory interest discount"
    )
    repos.discount_types.save(discount_type)
    created["discount_types"].append(discount_type.id)

    logger.info("Reference catalogues seeded: %s", {k: len(v) for k, v in created.items()})
    return created
