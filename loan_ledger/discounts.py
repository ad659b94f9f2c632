"""
Discount Module

Reductions of moratory (late-fee) debt. A discount never touches the
installment's capital or interest and never exceeds what is still owed on
the moratory record after payments and earlier discounts.
"""

from decimal import Decimal
from typing import Optional

from .exceptions import DiscountExceedsOutstandingDebt, LedgerValidationError
from .logging_config import get_logger, log_action
from .models import Discount, MoratoryInterest, MoratoryStatus, new_id, utc_now
from .money import ZERO, has_valid_precision, to_decimal
from .unit_of_work import UnitOfWork


class DiscountApplier:
    """Applies bounded discounts to moratory records"""

    def __init__(self, decimal_places: int = 2):
        self.places = decimal_places
        self.logger = get_logger("loan_ledger.discounts")

    def apply(self, uow: UnitOfWork, moratory: MoratoryInterest, amount: Decimal,
              description: str = "", discount_type_id: Optional[str] = None,
              created_by: Optional[str] = None) -> Discount:
        """
        Record a discount against a moratory record.

        The caller holds the loan lock so the outstanding balance read here
        cannot move under a concurrent payment.

        Raises:
            DiscountExceedsOutstandingDebt: amount is not positive or exceeds
                the outstanding moratory debt
            LedgerValidationError: amount has more decimals than the currency unit
        """
        amount = to_decimal(amount)
        if not has_valid_precision(amount, self.places):
            raise LedgerValidationError(
                f"Discount amount {amount} has more than {self.places} decimal places",
                field="amount", amount=amount
            )

        outstanding = moratory.outstanding
        if amount <= ZERO or amount > outstanding:
            raise DiscountExceedsOutstandingDebt(moratory.id, amount, outstanding)

        moratory.discounted_amount += amount
        if moratory.outstanding == ZERO:
            moratory.status = MoratoryStatus.DISCOUNTED
        else:
            moratory.status = MoratoryStatus.PARTIALLY_DISCOUNTED
        moratory.touch()
        uow.repos.moratory_interests.save(moratory)

        note = (
            f"[Discount of {amount} on moratory interest {moratory.id} "
            f"registered by {created_by or 'system'}]"
        )
        now = utc_now()
        discount = Discount(
            id=new_id(),
            created_at=now,
            updated_at=now,
            amount=amount,
            discount_type_id=discount_type_id,
            description=f"{description} {note}".strip(),
            moratory_id=moratory.id,
            installment_id=moratory.installment_id,
            loan_id=moratory.loan_id,
            created_by=created_by
        )
        uow.repos.discounts.save(discount)

        log_action(
            self.logger, "info", f"Discount applied to moratory interest {moratory.id}",
            user_id=created_by, action="apply_discount", resource=f"loan:{moratory.loan_id}",
            extra={
                "discount_id": discount.id,
                "amount": str(amount),
                "remaining": str(moratory.outstanding),
                "status": moratory.status.value
            }
        )
        return discount
