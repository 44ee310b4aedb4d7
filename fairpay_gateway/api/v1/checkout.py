"""Dossier checkout endpoints: hosted checkout session and embedded payment intent"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fairpay_gateway.api.dependencies import get_current_user_id, get_payment_provider, get_price_list
from fairpay_gateway.api.errors import to_http_exception
from fairpay_gateway.api.v1.schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
)
from fairpay_gateway.config import settings
from fairpay_gateway.domain.exceptions import DomainException
from fairpay_gateway.domain.pricing import PriceList
from fairpay_gateway.infrastructure.clients.stripe_provider import StripePaymentProvider
from fairpay_gateway.infrastructure.database.session import get_db
from fairpay_gateway.services.initiators import CheckoutInitiator

router = APIRouter()


def _initiator(db: Session, provider: StripePaymentProvider, prices: PriceList) -> CheckoutInitiator:
    return CheckoutInitiator(db, provider, prices, currency=settings.default_currency, app_url=settings.app_url)


@router.post("/checkout/session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    request_body: CheckoutSessionRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    prices: PriceList = Depends(get_price_list),
):
    """Save the dossier as a draft and open a Stripe Checkout session for it"""
    try:
        result = _initiator(db, provider, prices).create_session(
            user_id,
            request_body.procedure_data,
            procedure_id=request_body.procedure_id,
            has_facturation=request_body.has_facturation,
            coupon_id=request_body.coupon_id,
        )
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e) from e

    return CheckoutSessionResponse(session_id=result.session_id, url=result.url, procedure_id=result.procedure_id)


@router.post("/checkout/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    request_body: PaymentIntentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    prices: PriceList = Depends(get_price_list),
):
    """Payment intent for the embedded card form; the webhook materializes the dossier"""
    try:
        result = _initiator(db, provider, prices).create_payment_intent(
            user_id,
            request_body.amount,
            snapshot=request_body.procedure_data,
            procedure_id=request_body.procedure_id,
            has_facturation=request_body.has_facturation,
            has_echeancier=request_body.has_echeancier,
        )
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e) from e

    return PaymentIntentResponse(
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
        procedure_id=result.procedure_id,
    )
