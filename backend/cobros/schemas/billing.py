from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


SubscriptionStatus = Literal["active", "trialing", "past_due", "paused", "cancelled"]
InvoiceStatus = Literal["pending", "processing", "paid", "failed", "refunded", "void"]
BillingInterval = Literal["daily", "weekly", "biweekly", "monthly", "quarterly", "yearly"]


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    price: int
    currency: str
    interval: BillingInterval
    interval_count: int
    trial_days: int
    features: list = Field(default_factory=list)


class CustomerIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    document_type: str | None = Field(default=None, max_length=10)
    document_number: str | None = Field(default=None, max_length=40)


class CardIn(BaseModel):
    number: str = Field(..., min_length=12, max_length=23)
    exp_month: int = Field(..., ge=1, le=12)
    exp_year: int = Field(..., ge=2000, le=2100)
    cvc: str | None = Field(default=None, min_length=3, max_length=4)
    holder_name: str = Field(..., min_length=1, max_length=200)


class SubscribeIn(BaseModel):
    plan_id: UUID
    customer: CustomerIn
    card: CardIn


class RegisterTokenIn(BaseModel):
    plan_id: UUID
    customer: CustomerIn
    token: str = Field(..., min_length=1, max_length=255)
    last_four: str | None = Field(default=None, min_length=4, max_length=4)
    brand: str | None = Field(default=None, max_length=40)
    exp_month: int | None = Field(default=None, ge=1, le=12)
    exp_year: int | None = Field(default=None, ge=2000, le=2100)
    cardholder_name: str | None = Field(default=None, max_length=200)


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_id: UUID
    customer_id: UUID
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    trial_end: datetime | None = None
    cancel_at_period_end: bool
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    billing_cycle_count: int


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    amount: int
    currency: str
    platform_fee: int
    net_amount: int
    status: InvoiceStatus
    gateway: str
    gateway_transaction_id: str | None = None
    attempt_count: int
    next_retry_at: datetime | None = None
    last_error: str | None = None
    due_date: datetime
    paid_at: datetime | None = None
    billing_period_start: datetime
    billing_period_end: datetime


class SubscriptionDetailOut(BaseModel):
    subscription: SubscriptionOut
    invoices: list[InvoiceOut]


class SubscriptionActionIn(BaseModel):
    action: Literal["pause", "resume", "cancel", "cancel_immediately", "change_plan"]
    reason: str | None = Field(default=None, max_length=500)
    plan_id: UUID | None = None


class ManualChargeIn(BaseModel):
    # Optional at the schema level; the route answers 400 with the missing names
    subscription_id: str | None = None
    merchant_id: str | None = None
    gateway: str | None = None
    token: str | None = None
    amount: int | None = None
    currency: str = "COP"
    api_key: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None


class ChargeTransactionOut(BaseModel):
    id: str | None = None
    reference: str
    subscription_id: str
    amount: int
    currency: str
    platform_fee: int
    net_amount: int
    gateway: str
    timestamp: datetime


class ManualChargeOut(BaseModel):
    success: bool
    transaction: ChargeTransactionOut | None = None
    error: str | None = None
    message: str


class BillingRunOut(BaseModel):
    success: bool = True
    timestamp: datetime
    results: dict


class GatewayWebhookOut(BaseModel):
    ok: bool = True
    gateway: str
    event_id: str
    duplicate: bool
    processed: bool
    status: Literal["received", "processed", "ignored", "error"]
