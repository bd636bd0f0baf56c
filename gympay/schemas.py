"""
Pydantic schemas for the request bodies accepted by the payment endpoints.
Clients send camelCase keys; snake_case is accepted too.
"""
from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from gympay.models import PaymentStatus, PaymentType

MAX_PAYMENT_AMOUNT = Decimal("10000")

Amount = Annotated[Decimal, Field(gt=0, le=MAX_PAYMENT_AMOUNT, decimal_places=2)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentCreateRequest(_CamelModel):
    enrollment_id: int = Field(..., gt=0)
    amount: Amount
    payment_type: PaymentType
    description: Optional[str] = Field(None, max_length=512)
    customer_email: Optional[EmailStr] = None
    billing_address: Optional[Dict[str, Any]] = None


class PaymentConfirmRequest(_CamelModel):
    payment_intent_id: str = Field(..., min_length=1, max_length=255)
    payment_method_id: Optional[str] = Field(None, max_length=255)


class AdminPaymentCreateRequest(_CamelModel):
    enrollment_id: int = Field(..., gt=0)
    amount: Amount
    payment_type: PaymentType
    description: Optional[str] = Field(None, max_length=512)
    due_date: Optional[date] = None
    parent_email: EmailStr


class AdminPaymentUpdateRequest(_CamelModel):
    id: int = Field(..., gt=0)
    status: PaymentStatus
    notes: Optional[str] = Field(None, max_length=1024)
    refund_amount: Optional[Amount] = None
