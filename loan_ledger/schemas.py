"""
Pydantic schemas for ledger operation parameters
"""

from decimal import Decimal
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar, Union
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import LedgerValidationError

P = TypeVar('P', bound=BaseModel)


def _reject_float(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("amounts must be given as Decimal or string, not float")
    return value


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class CreateLoanParams(BaseModel):
    customer_id: str
    loan_amount: Decimal = Field(..., description="Decimal amount (Decimal or string)")
    interest_rate_id: str
    payment_frequency_id: str
    loan_type: str = Field(..., description="Loan type (fixed_fees, only_interests)")
    start_date: date
    penalty_rate_id: Optional[str] = None
    term_id: Optional[str] = None
    grace_period_id: Optional[str] = None
    installment_count: Optional[int] = Field(None, ge=1, description="Overrides term and default policy")
    created_by: Optional[str] = None

    @field_validator('loan_amount', mode='before')
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)

    @field_validator('loan_type', mode='before')
    @classmethod
    def loan_type_value(cls, value):
        return _enum_value(value)


class PaymentParams(BaseModel):
    loan_id: str
    amount: Decimal = Field(..., description="Decimal amount (Decimal or string)")
    payment_date: date
    payment_method_id: str = "cash"
    payment_type_id: str = "regular"
    recorded_by_user_id: Optional[str] = None
    collector_id: Optional[str] = None

    @field_validator('amount', mode='before')
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)


class RefinanceParams(BaseModel):
    as_of: date = Field(..., description="Date the old loan closes")
    loan_amount: Optional[Decimal] = Field(None, description="Defaults to the old remaining balance")
    interest_rate_id: Optional[str] = None
    penalty_rate_id: Optional[str] = None
    term_id: Optional[str] = None
    payment_frequency_id: Optional[str] = None
    loan_type: Optional[str] = None
    grace_period_id: Optional[str] = None
    installment_count: Optional[int] = Field(None, ge=1)
    start_date: Optional[date] = None
    refinanced_by: Optional[str] = None

    @field_validator('loan_amount', mode='before')
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)

    @field_validator('loan_type', mode='before')
    @classmethod
    def loan_type_value(cls, value):
        return _enum_value(value)


class DiscountParams(BaseModel):
    moratory_id: str
    amount: Decimal = Field(..., description="Decimal amount (Decimal or string)")
    description: str = ""
    discount_type_id: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator('amount', mode='before')
    @classmethod
    def reject_float(cls, value):
        return _reject_float(value)


def parse_params(model: Type[P], data: Union[P, Dict[str, Any]]) -> P:
    """Coerce a dict into a parameter model, raising LedgerValidationError on bad input"""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise LedgerValidationError(
            f"Invalid {model.__name__}: {first.get('msg')}",
            field=field, errors=len(e.errors())
        )
