"""Injonction de paiement payment endpoints"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fairpay_gateway.api.dependencies import get_current_user_id, get_payment_provider, get_price_list
from fairpay_gateway.api.errors import to_http_exception
from fairpay_gateway.api.v1.schemas import (
    CheckoutSessionResponse,
    InjonctionCheckoutRequest,
    InjonctionConfirmRequest,
    InjonctionConfirmResponse,
    InjonctionPaymentRequest,
    PaymentIntentResponse,
)
from fairpay_gateway.config import settings
from fairpay_gateway.domain.exceptions import DomainException
from fairpay_gateway.domain.pricing import PriceList
from fairpay_gateway.infrastructure.clients.stripe_provider import StripePaymentProvider
from fairpay_gateway.infrastructure.database.session import get_db
from fairpay_gateway.services.initiators import InjunctionInitiator

router = APIRouter()


def _initiator(db: Session, provider: StripePaymentProvider, prices: PriceList) -> InjunctionInitiator:
    return InjunctionInitiator(
        db,
        provider,
        prices,
        currency=settings.default_currency,
        app_url=settings.app_url,
        price_id=settings.stripe_price_id_injonction,
    )


@router.post("/injonction/payment-intent", response_model=PaymentIntentResponse)
def create_injonction_payment(
    request_body: InjonctionPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    prices: PriceList = Depends(get_price_list),
):
    try:
        result = _initiator(db, provider, prices).create_payment_intent(
            user_id,
            request_body.procedure_id,
            kbis_file_path=request_body.kbis_file_path,
            attestation_file_path=request_body.attestation_file_path,
        )
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e) from e

    return PaymentIntentResponse(
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
        procedure_id=result.procedure_id,
    )


@router.post("/injonction/checkout", response_model=CheckoutSessionResponse)
def create_injonction_checkout(
    request_body: InjonctionCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    prices: PriceList = Depends(get_price_list),
):
    """Hosted checkout for a procedure waiting at INJONCTION_DE_PAIEMENT"""
    try:
        result = _initiator(db, provider, prices).create_checkout(
            user_id,
            request_body.procedure_id,
            kbis_file_path=request_body.kbis_file_path,
            attestation_file_path=request_body.attestation_file_path,
            success_url=request_body.success_url,
            cancel_url=request_body.cancel_url,
        )
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e) from e

    return CheckoutSessionResponse(session_id=result.session_id, url=result.url, procedure_id=result.procedure_id)


@router.post("/injonction/confirm", response_model=InjonctionConfirmResponse)
def confirm_injonction_payment(
    request_body: InjonctionConfirmRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    prices: PriceList = Depends(get_price_list),
):
    """Record an injonction payment the card form reported as succeeded"""
    try:
        procedure = _initiator(db, provider, prices).confirm(
            user_id, request_body.procedure_id, request_body.payment_intent_id
        )
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e) from e

    return InjonctionConfirmResponse(
        success=True,
        payment_intent_id=request_body.payment_intent_id,
        procedure_id=procedure.id,
    )
