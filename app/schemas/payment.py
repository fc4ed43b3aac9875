from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from app.models.payment import PaymentStatus


class QuoteRequest(BaseModel):
    plan_id: int = Field(..., gt=0)
    offer_code: str | None = Field(None, max_length=50)


class QuoteResponse(BaseModel):
    plan_id: int
    offer_id: int | None = None
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    currency: str


class InitiatePaymentRequest(BaseModel):
    plan_id: int = Field(..., gt=0)
    offer_id: int | None = Field(None, gt=0)


class InitiatePaymentResponse(BaseModel):
    gateway_order_id: str
    transaction_id: str
    amount: Decimal
    currency: str
    key_id: str
    description: str


class ConfirmPaymentRequest(BaseModel):
    gateway_order_id: str = Field(..., min_length=1, max_length=100)
    gateway_payment_id: str = Field(..., min_length=1, max_length=100)
    signature: str = Field(..., min_length=1, max_length=256)
    plan_id: int = Field(..., gt=0)
    offer_id: int | None = Field(None, gt=0)


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(None, gt=0)
    reason: str | None = Field(None, max_length=500)


class PaymentRecordResponse(BaseModel):
    id: int
    transaction_id: str
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    user_id: int
    company_id: int | None = None
    plan_id: int
    offer_id: int | None = None
    currency: str
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    status: PaymentStatus
    payment_date: datetime
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    notes: str | None = None

    model_config = {"from_attributes": True}


class EntitlementResponse(BaseModel):
    user_id: int
    is_valid: bool
    plan_name: str | None = None
    expiry_date: datetime | None = None
    checked_at: datetime


class SubscriptionDetailsResponse(BaseModel):
    transaction_id: str
    plan_id: int
    plan_name: str
    plan_type: str
    start_date: datetime
    end_date: datetime
    days_remaining: int


def payment_payload(record) -> dict:
    return PaymentRecordResponse.model_validate(record).model_dump(mode="json")
