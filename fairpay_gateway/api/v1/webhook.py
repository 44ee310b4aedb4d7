"""POST /v1/stripe/webhook - Stripe event intake"""

import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from fairpay_gateway.api.dependencies import get_event_verifier, get_payment_provider, get_request_id
from fairpay_gateway.api.v1.schemas import WebhookAck
from fairpay_gateway.config import settings
from fairpay_gateway.domain.exceptions import InvalidSignature, MissingSignature
from fairpay_gateway.infrastructure.clients.stripe_provider import StripePaymentProvider
from fairpay_gateway.infrastructure.database.session import get_db
from fairpay_gateway.infrastructure.observability.logging import log_webhook_event
from fairpay_gateway.infrastructure.observability.metrics import (
    record_webhook_event,
    webhook_signature_failure_counter,
)
from fairpay_gateway.services.events import OUTCOME_FAILED, EventRouter, StripeEventVerifier
from fairpay_gateway.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    verifier: StripeEventVerifier = Depends(get_event_verifier),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    """
    Verify, route and reconcile one Stripe event.

    400 for a missing or invalid signature (never processed), 200 once the
    event is handled, ignored or recognised as a duplicate, 500 when a
    handler fails so that Stripe redelivers.
    """
    start_time = time.time()
    request_id = get_request_id(request)
    payload = await request.body()

    try:
        event = verifier.verify(payload, request.headers.get("stripe-signature"))
    except MissingSignature as e:
        webhook_signature_failure_counter.labels(reason="missing").inc()
        raise HTTPException(status_code=400, detail="Signature manquante") from e
    except InvalidSignature as e:
        webhook_signature_failure_counter.labels(reason="invalid").inc()
        logger.warning("Webhook signature rejected", extra={"request_id": request_id, "error": str(e)})
        raise HTTPException(status_code=400, detail="Signature invalide") from e

    reconciliation = ReconciliationService(
        db,
        provider,
        subscription_price_id=settings.stripe_price_id,
        currency=settings.default_currency,
    )
    event_router = EventRouter(
        db,
        reconciliation,
        ledger_enabled=settings.webhook_event_ledger_enabled,
        ledger_ttl_hours=settings.webhook_event_ledger_ttl_hours,
    )

    # Handlers make blocking Stripe and database calls
    try:
        outcome = await run_in_threadpool(event_router.dispatch, event)
    except Exception as e:
        record_webhook_event(event.type, OUTCOME_FAILED)
        logger.exception(
            "Webhook handler failed",
            extra={"request_id": request_id, "event_id": event.id, "event_type": event.type},
        )
        raise HTTPException(status_code=500, detail="Erreur serveur") from e

    record_webhook_event(event.type, outcome)
    log_webhook_event(
        request_id=request_id,
        event_id=event.id,
        event_type=event.type,
        outcome=outcome,
        duration_ms=(time.time() - start_time) * 1000,
    )
    return WebhookAck(received=True)
