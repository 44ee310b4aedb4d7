"""Stripe event verification and routing"""

import json
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fairpay_gateway.domain.exceptions import InvalidSignature, MissingSignature
from fairpay_gateway.domain.models import ProviderEvent
from fairpay_gateway.infrastructure.database.repositories import WebhookEventRepository
from fairpay_gateway.services.reconciliation import ReconciliationService
from fairpay_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

OUTCOME_HANDLED = "handled"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED = "failed"


class StripeEventVerifier:
    """Checks the Stripe-Signature header against the endpoint secret"""

    def __init__(self, secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature_header: Optional[str]) -> ProviderEvent:
        """
        Authenticate a raw webhook body and decode it.

        Raises:
            MissingSignature: No Stripe-Signature header (checked before parsing)
            InvalidSignature: Bad or stale signature, or a body that is not a Stripe event
        """
        if not signature_header:
            raise MissingSignature("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature_header, self.secret, self.tolerance)
        except UnicodeDecodeError as e:
            raise InvalidSignature("Webhook body is not UTF-8") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e

        try:
            data = json.loads(body)
            return ProviderEvent(
                id=data["id"],
                type=data["type"],
                data_object=data["data"]["object"],
                created=data.get("created"),
                livemode=bool(data.get("livemode", False)),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidSignature(f"Webhook body is not a Stripe event: {e}") from e


class EventRouter:
    """
    Fixed dispatch table from event type to reconciliation handler.

    The processed-event ledger catches plain redeliveries; the handlers' own
    state guards still cover deliveries that race past it.
    """

    def __init__(
        self,
        db: Session,
        reconciliation: ReconciliationService,
        ledger_enabled: bool = True,
        ledger_ttl_hours: int = 72,
    ):
        self.db = db
        self.ledger = WebhookEventRepository(db)
        self.ledger_enabled = ledger_enabled
        self.ledger_ttl = timedelta(hours=ledger_ttl_hours)
        self.handlers: Dict[str, Callable[[dict], None]] = {
            "checkout.session.completed": reconciliation.handle_checkout_completed,
            "checkout.session.async_payment_failed": reconciliation.handle_checkout_async_payment_failed,
            "payment_intent.succeeded": reconciliation.handle_payment_intent_succeeded,
            "payment_intent.payment_failed": reconciliation.handle_payment_intent_failed,
            "customer.subscription.created": reconciliation.handle_subscription_upserted,
            "customer.subscription.updated": reconciliation.handle_subscription_upserted,
            "customer.subscription.deleted": reconciliation.handle_subscription_deleted,
        }

    def dispatch(self, event: ProviderEvent) -> str:
        """
        Run the handler for an event and return the outcome label.

        Handler exceptions propagate so the caller can answer 500 and Stripe
        redelivers.
        """
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled event type", extra={"event_id": event.id, "event_type": event.type})
            return OUTCOME_IGNORED

        if self.ledger_enabled and self.ledger.is_processed(event.id):
            logger.info("Duplicate event skipped", extra={"event_id": event.id, "event_type": event.type})
            return OUTCOME_DUPLICATE

        try:
            handler(event.data_object)
        except Exception:
            self.db.rollback()
            raise

        if self.ledger_enabled:
            self._record(event)
        return OUTCOME_HANDLED

    def _record(self, event: ProviderEvent) -> None:
        try:
            self.ledger.mark_processed(event.id, event.type)
            self.ledger.prune(utcnow() - self.ledger_ttl)
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event recorded it first
            self.db.rollback()
