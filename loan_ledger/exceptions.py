"""
Ledger Exceptions Module

Error taxonomy for the ledger engine: validation, business-rule,
reference-integrity and consistency failures. Every error carries enough
structured detail (field, amount, limit) for the caller to act on it.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    category = "ledger"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation for the transport layer"""
        return {
            "error": type(self).__name__,
            "category": self.category,
            "message": self.message,
            "details": {
                k: str(v) if isinstance(v, Decimal) else v
                for k, v in self.details.items()
            }
        }


# Validation

class LedgerValidationError(LedgerError):
    """Malformed or missing input, rejected before any state change."""

    category = "validation"

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


# Business rules

class BusinessRuleError(LedgerError):
    """Operation violates a loan business rule."""

    category = "business_rule"


class UnsupportedLoanType(BusinessRuleError):
    """Loan type is neither fixed_fees nor only_interests."""


class OverpaymentNotSupported(BusinessRuleError):
    """Payment exceeds the total outstanding across unpaid installments."""

    def __init__(self, loan_id: str, amount: Decimal, outstanding: Decimal):
        super().__init__(
            f"Payment {amount} exceeds outstanding debt {outstanding} for loan {loan_id}",
            loan_id=loan_id, amount=amount, limit=outstanding
        )
        self.amount = amount
        self.outstanding = outstanding


class DiscountExceedsOutstandingDebt(BusinessRuleError):
    """Discount is not positive or is larger than the outstanding moratory debt."""

    def __init__(self, moratory_id: str, amount: Decimal, outstanding: Decimal):
        super().__init__(
            f"Discount {amount} exceeds outstanding moratory debt {outstanding} "
            f"for moratory interest {moratory_id}",
            moratory_id=moratory_id, amount=amount, limit=outstanding
        )
        self.amount = amount
        self.outstanding = outstanding


class GracePeriodNotApplicable(BusinessRuleError):
    """Grace period supplied for a loan type that does not support it."""


class GracePeriodActive(BusinessRuleError):
    """Capital obligations cannot be posted inside the grace window."""


class LoanInactive(BusinessRuleError):
    """Loan is cancelled, refinanced or otherwise inactive."""


class LoanAlreadyTerminal(BusinessRuleError):
    """Loan is in a terminal state and accepts no further mutation."""


class LoanAlreadyCompleted(LoanAlreadyTerminal):
    """Loan has been fully paid."""


class LoanAlreadyCancelled(LoanAlreadyTerminal):
    """Loan has already been cancelled."""


class LoanNotRefinanceable(BusinessRuleError):
    """Loan was already cancelled or refinanced."""


class ScheduleLocked(BusinessRuleError):
    """Installments already carry payments and cannot be regenerated."""


# Reference integrity

class ReferenceIntegrityError(LedgerError):
    """A referenced entity is missing or inactive."""

    category = "reference_integrity"


class ReferenceNotFound(ReferenceIntegrityError):
    """Reference data (customer, rate, term, frequency...) missing or inactive."""

    def __init__(self, kind: str, reference_id: Any):
        super().__init__(
            f"{kind} {reference_id} not found or inactive",
            kind=kind, reference_id=reference_id
        )
        self.kind = kind
        self.reference_id = reference_id


class LoanNotFound(ReferenceIntegrityError):
    """Loan does not exist."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", loan_id=loan_id)
        self.loan_id = loan_id


class MoratoryInterestNotFound(ReferenceIntegrityError):
    """Moratory interest record does not exist."""

    def __init__(self, moratory_id: str):
        super().__init__(f"Moratory interest {moratory_id} not found", moratory_id=moratory_id)


# Consistency

class ConsistencyError(LedgerError):
    """Ledger invariant violated before commit. Always a defect."""

    category = "consistency"


class LockTimeout(LedgerError):
    """Per-loan lock could not be acquired within the configured wait."""

    category = "concurrency"
