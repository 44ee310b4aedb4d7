"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fairpay_gateway.domain.snapshot import ProcedureSnapshot


class CamelModel(BaseModel):
    """The web app speaks camelCase on the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookAck(BaseModel):
    received: bool = True


class RetryPaymentRequest(CamelModel):
    """Request body for POST /v1/payments/retry"""

    payment_id: Optional[str] = None


class RetryPaymentResponse(CamelModel):
    client_secret: Optional[str]
    payment_intent_id: str
    payment_id: str


class UnpaidPayment(CamelModel):
    id: str
    amount: Decimal
    currency: str
    status: str
    description: Optional[str] = None
    procedure_id: Optional[str] = None
    created_at: Optional[datetime] = None


class UnpaidSubscription(CamelModel):
    id: str
    stripe_subscription_id: str
    status: str
    current_period_end: Optional[datetime] = None


class UnpaidResponse(CamelModel):
    """Response for GET /v1/payments/unpaid"""

    has_unpaid: bool
    payments: List[UnpaidPayment]
    subscriptions: List[UnpaidSubscription]


class CheckoutSessionRequest(CamelModel):
    """Request body for POST /v1/checkout/session"""

    procedure_data: ProcedureSnapshot
    procedure_id: Optional[str] = None
    has_facturation: bool = False
    coupon_id: Optional[str] = None


class CheckoutSessionResponse(CamelModel):
    session_id: str
    url: Optional[str]
    procedure_id: str


class PaymentIntentRequest(CamelModel):
    """Request body for POST /v1/checkout/payment-intent"""

    amount: float = Field(..., description="Amount in euros, TTC")
    procedure_data: Optional[ProcedureSnapshot] = None
    procedure_id: Optional[str] = None
    has_facturation: bool = False
    has_echeancier: bool = False


class PaymentIntentResponse(CamelModel):
    client_secret: Optional[str]
    payment_intent_id: str
    procedure_id: Optional[str] = None


class InjonctionPaymentRequest(CamelModel):
    """Request body for POST /v1/injonction/payment-intent"""

    procedure_id: str = Field(..., min_length=1)
    kbis_file_path: Optional[str] = None
    attestation_file_path: Optional[str] = None


class InjonctionCheckoutRequest(InjonctionPaymentRequest):
    """Request body for POST /v1/injonction/checkout"""

    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class InjonctionConfirmRequest(CamelModel):
    """Request body for POST /v1/injonction/confirm"""

    payment_intent_id: str = Field(..., min_length=1)
    procedure_id: str = Field(..., min_length=1)


class InjonctionConfirmResponse(CamelModel):
    success: bool
    payment_intent_id: str
    procedure_id: str


class CancelSubscriptionResponse(CamelModel):
    """Response for POST /v1/subscriptions/cancel"""

    success: bool
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None
