"""Payment endpoints: retry of a failed payment and unpaid check"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from fairpay_gateway.api.dependencies import get_current_user_id, get_payment_provider, get_request_id
from fairpay_gateway.api.v1.schemas import (
    RetryPaymentRequest,
    RetryPaymentResponse,
    UnpaidPayment,
    UnpaidResponse,
    UnpaidSubscription,
)
from fairpay_gateway.domain.exceptions import NotFound
from fairpay_gateway.infrastructure.clients.stripe_provider import StripePaymentProvider
from fairpay_gateway.infrastructure.database.repositories import PaymentRepository, SubscriptionRepository
from fairpay_gateway.infrastructure.database.session import get_db
from fairpay_gateway.infrastructure.observability.logging import log_payment_retry
from fairpay_gateway.services.initiators import PaymentRetryInitiator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments/retry", response_model=RetryPaymentResponse)
def retry_payment(
    request: Request,
    request_body: Optional[RetryPaymentRequest] = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    """
    Re-attempt a FAILED or PENDING payment of the caller on a new payment intent.

    The same Payment row is reused: it points at the new intent and is back
    to PENDING until the webhook reports the outcome.
    """
    if request_body is None or not request_body.payment_id:
        raise HTTPException(status_code=400, detail="paymentId requis")

    try:
        result = PaymentRetryInitiator(db, provider).retry(user_id, request_body.payment_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except Exception as e:
        db.rollback()
        logger.exception("Payment retry failed", extra={"payment_id": request_body.payment_id})
        raise HTTPException(status_code=500, detail=str(e)) from e

    log_payment_retry(
        request_id=get_request_id(request),
        user_id=user_id,
        payment_id=result.payment_id,
        payment_intent_id=result.payment_intent_id,
        original_payment_intent_id=result.original_payment_intent_id,
    )
    return RetryPaymentResponse(
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
        payment_id=result.payment_id,
    )


@router.get("/payments/unpaid", response_model=UnpaidResponse)
def unpaid_payments(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Latest FAILED/PENDING payments and PAST_DUE/UNPAID subscriptions of the caller"""
    payments = PaymentRepository(db).get_unpaid_for_user(user_id, limit=5)
    subscriptions = SubscriptionRepository(db).get_unpaid_for_user(user_id)

    return UnpaidResponse(
        has_unpaid=bool(payments or subscriptions),
        payments=[
            UnpaidPayment(
                id=p.id,
                amount=p.amount,
                currency=p.currency,
                status=p.status.value,
                description=p.description,
                procedure_id=p.procedure_id,
                created_at=p.created_at,
            )
            for p in payments
        ],
        subscriptions=[
            UnpaidSubscription(
                id=s.id,
                stripe_subscription_id=s.stripe_subscription_id,
                status=s.status.value,
                current_period_end=s.current_period_end,
            )
            for s in subscriptions
        ],
    )
