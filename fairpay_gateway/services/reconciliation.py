"""
Webhook reconciliation handlers.

Each handler applies one Stripe event to local state. Events may arrive more
than once and in any order, so every write is keyed by a Stripe id (upsert by
payment intent or subscription id) or guarded by an "already in target state"
check. The primary transition of a handler is committed as one transaction;
invoice and bundled-subscription creation run afterwards, each in its own
transaction, and never undo the primary transition when they fail.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from fairpay_gateway.domain.exceptions import MalformedMetadata, PaymentProviderError
from fairpay_gateway.domain.metadata import EnvelopeKind, PaymentMetadata, decode_metadata
from fairpay_gateway.domain.models import PaymentStatus, ProcedureStatus
from fairpay_gateway.domain.pricing import from_minor_units
from fairpay_gateway.domain.snapshot import ProcedureSnapshot
from fairpay_gateway.domain.subscriptions import map_subscription_status
from fairpay_gateway.domain.transitions import paid_target_status
from fairpay_gateway.infrastructure.clients.stripe_provider import (
    field_of,
    payment_intent_from_stripe,
    subscription_from_stripe,
)
from fairpay_gateway.infrastructure.database.models import Payment, Procedure
from fairpay_gateway.infrastructure.database.repositories import (
    ClientRepository,
    PaymentRepository,
    ProcedureRepository,
    SubscriptionRepository,
    UserRepository,
)
from fairpay_gateway.infrastructure.observability.metrics import (
    malformed_metadata_counter,
    record_procedure_transition,
    side_effect_failure_counter,
)
from fairpay_gateway.services.invoicing import DEFAULT_INVOICE_DESCRIPTION, InvoiceIssuer

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Applies verified Stripe events to procedures, payments and subscriptions"""

    def __init__(
        self,
        db: Session,
        provider,
        subscription_price_id: Optional[str] = None,
        currency: str = "eur",
    ):
        self.db = db
        self.provider = provider
        self.subscription_price_id = subscription_price_id
        self.currency = currency
        self.users = UserRepository(db)
        self.clients = ClientRepository(db)
        self.payments = PaymentRepository(db)
        self.procedures = ProcedureRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.invoices = InvoiceIssuer(provider)

    # ------------------------------------------------------------------
    # Checkout sessions
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, session: Dict[str, Any]) -> None:
        session_id = field_of(session, "id")
        envelope = decode_metadata(field_of(session, "metadata"))

        if field_of(session, "payment_status") != "paid":
            logger.info(
                "Checkout completed without payment",
                extra={"session_id": session_id, "payment_status": field_of(session, "payment_status")},
            )
            self._mark_checkout_failed(envelope)
            return

        if not envelope.user_id or not envelope.procedure_id:
            logger.warning(
                "Checkout session metadata lacks userId or procedureId",
                extra={"session_id": session_id},
            )
            return

        procedure = self.procedures.get(envelope.procedure_id)
        if procedure is None:
            logger.warning(
                "Checkout session names an unknown procedure",
                extra={"session_id": session_id, "procedure_id": envelope.procedure_id},
            )
            return

        target = paid_target_status(envelope)
        if (
            procedure.status == target
            and procedure.payment_status == PaymentStatus.SUCCEEDED
            and procedure.payment_id
        ):
            logger.info(
                "Procedure already paid, skipping redelivered checkout",
                extra={"session_id": session_id, "procedure_id": procedure.id},
            )
            return

        intent_id = field_of(session, "payment_intent")
        if intent_id is not None and not isinstance(intent_id, str):
            intent_id = field_of(intent_id, "id")
        amount_total = int(field_of(session, "amount_total", 0))
        currency = field_of(session, "currency", self.currency)

        payment = self.payments.get_by_intent_id(intent_id) if intent_id else None
        if payment is not None:
            self.payments.set_status(payment, PaymentStatus.SUCCEEDED)
            self.payments.link_procedure(payment, procedure.id)
        else:
            payment = self.payments.create(
                user_id=envelope.user_id,
                amount=from_minor_units(amount_total),
                currency=currency,
                status=PaymentStatus.SUCCEEDED,
                intent_id=intent_id,
                charge_id=self._charge_id(intent_id),
                description=DEFAULT_INVOICE_DESCRIPTION,
                metadata=dict(field_of(session, "metadata", {})),
                procedure_id=procedure.id,
            )

        self.procedures.force_status(procedure.id, target, PaymentStatus.SUCCEEDED, payment.id)
        self.db.commit()
        record_procedure_transition(target)
        logger.info(
            "Checkout reconciled",
            extra={
                "session_id": session_id,
                "procedure_id": procedure.id,
                "payment_id": payment.id,
                "payment_intent_id": intent_id,
                "status": target.value,
            },
        )

        customer_id = self._customer_id(session, envelope.user_id)
        self._issue_checkout_invoice(session_id, customer_id, payment, amount_total, currency)
        if envelope.has_facturation:
            self._ensure_bundled_subscription(envelope.user_id, customer_id)

    def handle_checkout_async_payment_failed(self, session: Dict[str, Any]) -> None:
        logger.info("Asynchronous checkout payment failed", extra={"session_id": field_of(session, "id")})
        self._mark_checkout_failed(decode_metadata(field_of(session, "metadata")))

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    def handle_payment_intent_succeeded(self, payload: Dict[str, Any]) -> None:
        intent = payment_intent_from_stripe(payload)
        envelope = decode_metadata(intent.metadata)
        if not envelope.user_id:
            logger.warning("Payment intent metadata lacks userId", extra={"payment_intent_id": intent.id})
            return

        payment = self.payments.upsert_by_intent(
            intent.id,
            PaymentStatus.SUCCEEDED,
            user_id=envelope.user_id,
            amount=from_minor_units(intent.amount),
            currency=intent.currency or self.currency,
            charge_id=intent.latest_charge,
            description=intent.description or DEFAULT_INVOICE_DESCRIPTION,
            metadata=intent.metadata,
        )
        self.db.commit()

        linked = self.procedures.get(payment.procedure_id)
        if linked is not None and linked.status != ProcedureStatus.BROUILLONS:
            logger.info(
                "Payment already linked to a procedure",
                extra={"payment_intent_id": intent.id, "procedure_id": linked.id},
            )
            return

        try:
            self._materialize_paid_procedure(payment, envelope, linked)
        except Exception:
            self.db.rollback()
            side_effect_failure_counter.labels(step="procedure").inc()
            logger.exception(
                "Failed to materialize procedure after payment",
                extra={"payment_intent_id": intent.id, "payment_id": payment.id},
            )

    def handle_payment_intent_failed(self, payload: Dict[str, Any]) -> None:
        intent = payment_intent_from_stripe(payload)
        envelope = decode_metadata(intent.metadata)
        if not envelope.user_id:
            logger.warning("Payment intent metadata lacks userId", extra={"payment_intent_id": intent.id})
            return

        existing = self.payments.get_by_intent_id(intent.id)
        if existing is not None and existing.status == PaymentStatus.SUCCEEDED:
            logger.info(
                "Ignoring failure for an intent that already succeeded",
                extra={"payment_intent_id": intent.id, "payment_id": existing.id},
            )
            return

        payment = self.payments.upsert_by_intent(
            intent.id,
            PaymentStatus.FAILED,
            user_id=envelope.user_id,
            amount=from_minor_units(intent.amount),
            currency=intent.currency or self.currency,
            description=intent.description or DEFAULT_INVOICE_DESCRIPTION,
            metadata=intent.metadata,
        )

        procedure = self._fail_named_procedure(envelope) if envelope.procedure_id else None
        if procedure is not None:
            self.db.commit()
            if procedure.status == ProcedureStatus.BROUILLONS:
                record_procedure_transition(ProcedureStatus.BROUILLONS)
            logger.info(
                "Procedure payment marked failed",
                extra={
                    "payment_intent_id": intent.id,
                    "procedure_id": procedure.id,
                    "status": procedure.status.value,
                },
            )
            return

        if payment.procedure_id:
            # Draft from an earlier delivery of this failure
            self.db.commit()
            return

        snapshot = self._snapshot(envelope, "payment_intent.payment_failed", intent.id)
        if snapshot is not None:
            client = self.clients.find_or_create(snapshot)
            procedure = self.procedures.create_from_snapshot(
                user_id=envelope.user_id,
                client_id=client.id,
                snapshot=snapshot,
                status=ProcedureStatus.BROUILLONS,
                payment_status=PaymentStatus.FAILED,
                payment_id=payment.id,
                has_facturation=envelope.has_facturation,
            )
            self.payments.link_procedure(payment, procedure.id)
            record_procedure_transition(ProcedureStatus.BROUILLONS)
            logger.info(
                "Recoverable draft created after failed payment",
                extra={"payment_intent_id": intent.id, "procedure_id": procedure.id},
            )
        self.db.commit()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def handle_subscription_upserted(self, payload: Dict[str, Any]) -> None:
        subscription = subscription_from_stripe(payload)
        envelope = decode_metadata(field_of(payload, "metadata"))
        customer_id = field_of(payload, "customer")

        user = self.users.get(envelope.user_id) if envelope.user_id else None
        if user is None:
            user = self.users.get_by_customer_id(customer_id)
        if user is None:
            logger.warning(
                "No user for subscription",
                extra={"subscription_id": subscription.id, "customer_id": customer_id},
            )
            return

        status = map_subscription_status(subscription.status)
        self.subscriptions.upsert(user.id, subscription, status)
        self.users.set_subscription_id(user.id, subscription.id)
        self.db.commit()
        logger.info(
            "Subscription synchronized",
            extra={"subscription_id": subscription.id, "user_id": user.id, "status": status.value},
        )

    def handle_subscription_deleted(self, payload: Dict[str, Any]) -> None:
        subscription_id = field_of(payload, "id")
        customer_id = field_of(payload, "customer")
        user = self.users.get_by_customer_id(customer_id)
        if user is None:
            logger.warning(
                "No user for deleted subscription",
                extra={"subscription_id": subscription_id, "customer_id": customer_id},
            )
            return

        count = self.subscriptions.cancel_all(user.id, subscription_id)
        self.users.set_subscription_id(user.id, None)
        self.db.commit()
        logger.info(
            "Subscription canceled",
            extra={"subscription_id": subscription_id, "user_id": user.id, "rows": count},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail_named_procedure(self, envelope: PaymentMetadata) -> Optional[Procedure]:
        """
        Mark the payment of the procedure named by the envelope as failed.

        Dossier payments send the procedure back to draft. A failed injonction
        payment keeps the procedure at its stage so the user can pay again; the
        FAILED mirror is only set while it is still at INJONCTION_DE_PAIEMENT.
        """
        procedure = self.procedures.get(envelope.procedure_id)
        if procedure is None:
            return None
        if envelope.is_injonction and procedure.status != ProcedureStatus.BROUILLONS:
            if procedure.status == ProcedureStatus.INJONCTION_DE_PAIEMENT:
                self.procedures.force_status(procedure.id, procedure.status, PaymentStatus.FAILED)
            return procedure
        return self.procedures.revert_to_draft(procedure.id)

    def _mark_checkout_failed(self, envelope: PaymentMetadata) -> None:
        if not envelope.procedure_id:
            return
        procedure = self._fail_named_procedure(envelope)
        if procedure is None:
            logger.warning("Unknown procedure in metadata", extra={"procedure_id": envelope.procedure_id})
            return
        self.db.commit()
        if procedure.status == ProcedureStatus.BROUILLONS:
            record_procedure_transition(ProcedureStatus.BROUILLONS)

    def _snapshot(self, envelope: PaymentMetadata, event_type: str, intent_id: str) -> Optional[ProcedureSnapshot]:
        try:
            return envelope.snapshot()
        except MalformedMetadata as e:
            malformed_metadata_counter.labels(event_type=event_type).inc()
            logger.warning(
                "Unreadable procedureData in metadata",
                extra={"payment_intent_id": intent_id, "error": str(e)},
            )
            return None

    def _materialize_paid_procedure(
        self,
        payment: Payment,
        envelope: PaymentMetadata,
        linked: Optional[Procedure],
    ) -> None:
        """Turn the draft behind a successful payment into a NOUVEAU procedure"""
        target = paid_target_status(envelope)
        named = self.procedures.get(envelope.procedure_id)
        if named is not None and named.status != ProcedureStatus.BROUILLONS:
            logger.info(
                "Named procedure is no longer a draft",
                extra={"procedure_id": named.id, "payment_id": payment.id},
            )
            return
        draft = named or linked

        snapshot = self._snapshot(envelope, "payment_intent.succeeded", payment.stripe_payment_intent_id)
        if snapshot is None:
            # Checkout-flow intents are completed by checkout.session.completed
            if envelope.kind == EnvelopeKind.RETRY and draft is not None:
                self.procedures.force_status(draft.id, target, PaymentStatus.SUCCEEDED, payment.id)
                self.payments.link_procedure(payment, draft.id)
                self.db.commit()
                record_procedure_transition(target)
                logger.info(
                    "Draft paid by retry",
                    extra={"procedure_id": draft.id, "payment_id": payment.id},
                )
            return

        if draft is not None:
            client = self.clients.resolve_for_draft(draft.client, snapshot)
            procedure = self.procedures.apply_snapshot(draft, client.id, snapshot, envelope.has_facturation)
            self.procedures.force_status(procedure.id, target, PaymentStatus.SUCCEEDED, payment.id)
        else:
            client = self.clients.find_or_create(snapshot)
            procedure = self.procedures.create_from_snapshot(
                user_id=envelope.user_id,
                client_id=client.id,
                snapshot=snapshot,
                status=target,
                payment_status=PaymentStatus.SUCCEEDED,
                payment_id=payment.id,
                has_facturation=envelope.has_facturation,
            )
        self.payments.link_procedure(payment, procedure.id)
        self.db.commit()
        record_procedure_transition(target)
        logger.info(
            "Procedure materialized from payment",
            extra={
                "procedure_id": procedure.id,
                "payment_id": payment.id,
                "payment_intent_id": payment.stripe_payment_intent_id,
                "updated_draft": draft is not None,
            },
        )

    def _charge_id(self, intent_id: Optional[str]) -> Optional[str]:
        if not intent_id:
            return None
        try:
            return self.provider.retrieve_payment_intent(intent_id).latest_charge
        except PaymentProviderError as e:
            logger.warning("Charge id unavailable", extra={"payment_intent_id": intent_id, "error": str(e)})
            return None

    def _customer_id(self, session: Dict[str, Any], user_id: str) -> Optional[str]:
        customer = field_of(session, "customer")
        if customer is not None and not isinstance(customer, str):
            customer = field_of(customer, "id")
        if customer:
            return customer
        user = self.users.get(user_id)
        return user.stripe_customer_id if user else None

    def _issue_checkout_invoice(
        self,
        session_id: str,
        customer_id: Optional[str],
        payment: Payment,
        amount_total: int,
        currency: str,
    ) -> None:
        if not customer_id:
            logger.info("No Stripe customer, skipping invoice", extra={"payment_id": payment.id})
            return
        try:
            lines = self.invoices.checkout_lines(session_id, amount_total, currency)
            self.invoices.issue(
                customer_id,
                lines,
                currency,
                metadata={
                    "paymentId": payment.id,
                    "paymentIntentId": payment.stripe_payment_intent_id or "",
                    "procedureId": payment.procedure_id or "",
                },
            )
        except Exception:
            self.db.rollback()
            side_effect_failure_counter.labels(step="invoice").inc()
            logger.exception("Invoice creation failed", extra={"payment_id": payment.id, "session_id": session_id})

    def _ensure_bundled_subscription(self, user_id: str, customer_id: Optional[str]) -> None:
        if not self.subscription_price_id or not customer_id:
            logger.warning(
                "Cannot start bundled subscription without a price and a customer",
                extra={"user_id": user_id},
            )
            return
        if self.subscriptions.has_current(user_id):
            return
        try:
            subscription = self.provider.create_subscription(
                customer_id, self.subscription_price_id, metadata={"userId": user_id}
            )
            self.subscriptions.upsert(user_id, subscription, map_subscription_status(subscription.status))
            self.users.set_subscription_id(user_id, subscription.id)
            self.db.commit()
            logger.info(
                "Bundled subscription started",
                extra={"user_id": user_id, "subscription_id": subscription.id},
            )
        except Exception:
            self.db.rollback()
            side_effect_failure_counter.labels(step="subscription").inc()
            logger.exception("Bundled subscription creation failed", extra={"user_id": user_id})
