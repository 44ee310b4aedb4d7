"""
Payment initiators.

Every payment intent or checkout session created here carries a metadata
envelope built by encode_metadata, so the webhook can always tell which user
and which dossier a later event belongs to.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from fairpay_gateway.domain.exceptions import AccessDenied, InvalidRequest, NotFound, PaymentProviderError
from fairpay_gateway.domain.metadata import (
    MAX_METADATA_VALUE_LENGTH,
    PaymentMetadata,
    decode_metadata,
    encode_metadata,
)
from fairpay_gateway.domain.models import PaymentStatus, ProcedureStatus, ProviderLineItem
from fairpay_gateway.domain.pricing import (
    PriceList,
    dossier_checkout_lines,
    from_minor_units,
    injonction_checkout_line,
    to_minor_units,
    ttc_minor_units,
)
from fairpay_gateway.domain.snapshot import ProcedureSnapshot, serialize_procedure_snapshot
from fairpay_gateway.domain.transitions import retry_flags
from fairpay_gateway.infrastructure.database.models import Procedure, User
from fairpay_gateway.infrastructure.database.repositories import (
    ClientRepository,
    PaymentRepository,
    ProcedureRepository,
    UserRepository,
)
from fairpay_gateway.infrastructure.observability.metrics import payment_retry_counter, record_procedure_transition
from fairpay_gateway.services.invoicing import InvoiceIssuer

logger = logging.getLogger(__name__)

INJONCTION_DESCRIPTION = "Injonction de paiement"
DOSSIER_DESCRIPTION = "Paiement de dossier"


@dataclass
class RetryResult:
    client_secret: Optional[str]
    payment_intent_id: str
    payment_id: str
    original_payment_intent_id: Optional[str] = None


@dataclass
class IntentResult:
    client_secret: Optional[str]
    payment_intent_id: str
    procedure_id: Optional[str] = None


@dataclass
class CheckoutResult:
    session_id: str
    url: Optional[str]
    procedure_id: str


def ensure_customer(db: Session, provider, user: User) -> str:
    """Stripe customer id of a user, created on first use"""
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer_id = provider.create_customer(user.email, user.id)
    UserRepository(db).set_customer_id(user, customer_id)
    db.commit()
    logger.info("Stripe customer created", extra={"user_id": user.id, "customer_id": customer_id})
    return customer_id


class PaymentRetryInitiator:
    """Re-attempts a FAILED or PENDING payment on a fresh payment intent"""

    def __init__(self, db: Session, provider):
        self.db = db
        self.provider = provider
        self.users = UserRepository(db)
        self.payments = PaymentRepository(db)
        self.procedures = ProcedureRepository(db)

    def retry(self, user_id: str, payment_id: str) -> RetryResult:
        """
        Raises:
            NotFound: Payment missing, owned by someone else, not retryable,
                or the user has no Stripe customer
            PaymentProviderError: Stripe refused the new intent
        """
        payment = self.payments.get_retryable_for_user(payment_id, user_id)
        user = self.users.get(user_id)
        if payment is None or user is None or not user.stripe_customer_id:
            raise NotFound("Paiement introuvable ou non éligible")

        procedure = self.procedures.get(payment.procedure_id)
        is_injonction, has_echeancier = retry_flags(procedure.status if procedure else None)

        envelope = PaymentMetadata(
            user_id=user_id,
            procedure_id=payment.procedure_id,
            payment_id=payment.id,
            original_payment_intent_id=payment.stripe_payment_intent_id,
            is_retry=True,
            is_injonction=is_injonction,
            has_echeancier=has_echeancier,
        )
        stored = payment.payment_metadata or {}
        if procedure is None:
            # Unlinked payment: carry the draft forward so success can still materialize it
            carried = stored.get("procedureData")
            if carried and len(carried) <= MAX_METADATA_VALUE_LENGTH:
                envelope.procedure_data = carried
            envelope.has_facturation = str(stored.get("hasFacturation", "")).lower() == "true"

        original_intent_id = payment.stripe_payment_intent_id
        intent = self.provider.create_payment_intent(
            amount_cents=to_minor_units(payment.amount),
            currency=payment.currency,
            metadata=encode_metadata(envelope),
            description=payment.description,
            customer_id=user.stripe_customer_id,
        )

        self.payments.restart_with_intent(payment, intent.id)
        self.db.commit()
        payment_retry_counter.inc()
        logger.info(
            "Payment intent recreated for retry",
            extra={
                "payment_id": payment.id,
                "payment_intent_id": intent.id,
                "original_payment_intent_id": original_intent_id,
            },
        )
        return RetryResult(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            payment_id=payment.id,
            original_payment_intent_id=original_intent_id,
        )


class CheckoutInitiator:
    """Starts payment for a new dossier, either hosted checkout or an embedded intent"""

    def __init__(self, db: Session, provider, prices: PriceList, currency: str, app_url: str):
        self.db = db
        self.provider = provider
        self.prices = prices
        self.currency = currency
        self.app_url = app_url.rstrip("/")
        self.users = UserRepository(db)
        self.clients = ClientRepository(db)
        self.procedures = ProcedureRepository(db)

    def _user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFound("Utilisateur non trouvé")
        return user

    def _save_draft(
        self,
        user_id: str,
        snapshot: ProcedureSnapshot,
        procedure_id: Optional[str],
        has_facturation: bool,
    ) -> Procedure:
        """Create the BROUILLONS draft, or refresh the caller's existing one"""
        if procedure_id:
            procedure = self.procedures.get(procedure_id)
            if procedure is None:
                raise NotFound("Procédure non trouvée")
            if procedure.user_id != user_id:
                raise AccessDenied("Procédure appartenant à un autre utilisateur")
            if procedure.status != ProcedureStatus.BROUILLONS:
                raise InvalidRequest("Seul un brouillon peut être payé")
            client = self.clients.resolve_for_draft(procedure.client, snapshot)
            procedure = self.procedures.apply_snapshot(procedure, client.id, snapshot, has_facturation)
        else:
            client = self.clients.find_or_create(snapshot)
            procedure = self.procedures.create_from_snapshot(
                user_id=user_id,
                client_id=client.id,
                snapshot=snapshot,
                status=ProcedureStatus.BROUILLONS,
                has_facturation=has_facturation,
            )
        self.db.commit()
        return procedure

    def create_session(
        self,
        user_id: str,
        snapshot: ProcedureSnapshot,
        procedure_id: Optional[str] = None,
        has_facturation: bool = False,
        coupon_id: Optional[str] = None,
    ) -> CheckoutResult:
        user = self._user(user_id)
        procedure = self._save_draft(user_id, snapshot, procedure_id, has_facturation)
        customer_id = ensure_customer(self.db, self.provider, user)

        metadata = encode_metadata(
            PaymentMetadata(
                user_id=user_id,
                procedure_id=procedure.id,
                has_facturation=has_facturation,
                has_echeancier=snapshot.has_echeancier,
            )
        )
        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            lines=dossier_checkout_lines(self.prices, has_facturation, snapshot.has_echeancier),
            currency=self.currency,
            metadata=metadata,
            success_url=f"{self.app_url}/dashboard/procedures/{procedure.id}?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/dashboard/procedures/{procedure.id}?payment=cancelled",
            coupon_id=coupon_id,
        )
        logger.info(
            "Checkout session created",
            extra={"user_id": user_id, "procedure_id": procedure.id, "session_id": session.id},
        )
        return CheckoutResult(session_id=session.id, url=session.url, procedure_id=procedure.id)

    def create_payment_intent(
        self,
        user_id: str,
        amount: float,
        snapshot: Optional[ProcedureSnapshot] = None,
        procedure_id: Optional[str] = None,
        has_facturation: bool = False,
        has_echeancier: bool = False,
    ) -> IntentResult:
        """
        Raises:
            InvalidRequest: Non-positive amount
            MalformedMetadata: Neither a procedure nor a snapshot, or a
                snapshot too large for Stripe metadata
        """
        if amount is None or amount <= 0:
            raise InvalidRequest("Montant invalide")
        user = self._user(user_id)

        metadata = encode_metadata(
            PaymentMetadata(
                user_id=user_id,
                procedure_id=procedure_id,
                procedure_data=serialize_procedure_snapshot(snapshot) if snapshot else None,
                has_facturation=has_facturation,
                has_echeancier=has_echeancier,
            )
        )
        customer_id = ensure_customer(self.db, self.provider, user)
        intent = self.provider.create_payment_intent(
            amount_cents=to_minor_units(amount),
            currency=self.currency,
            metadata=metadata,
            description=DOSSIER_DESCRIPTION,
            customer_id=customer_id,
        )
        logger.info(
            "Payment intent created",
            extra={"user_id": user_id, "procedure_id": procedure_id, "payment_intent_id": intent.id},
        )
        return IntentResult(client_secret=intent.client_secret, payment_intent_id=intent.id, procedure_id=procedure_id)


class InjunctionInitiator:
    """Payment of the injonction de paiement step of an existing procedure"""

    def __init__(
        self,
        db: Session,
        provider,
        prices: PriceList,
        currency: str,
        app_url: str,
        price_id: Optional[str] = None,
    ):
        self.db = db
        self.provider = provider
        self.prices = prices
        self.currency = currency
        self.app_url = app_url.rstrip("/")
        self.price_id = price_id
        self.users = UserRepository(db)
        self.payments = PaymentRepository(db)
        self.procedures = ProcedureRepository(db)
        self.invoices = InvoiceIssuer(provider)

    def _owned_procedure(self, user_id: str, procedure_id: str) -> Procedure:
        procedure = self.procedures.get(procedure_id)
        if procedure is None:
            raise NotFound("Procédure non trouvée")
        if procedure.user_id != user_id:
            raise AccessDenied("Procédure appartenant à un autre utilisateur")
        return procedure

    @staticmethod
    def _require_injonction_stage(procedure: Procedure) -> None:
        if procedure.status != ProcedureStatus.INJONCTION_DE_PAIEMENT:
            raise InvalidRequest("La procédure n'est pas au stade de l'injonction de paiement")

    def _user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFound("Utilisateur non trouvé")
        return user

    def _price_ht(self) -> float:
        """HT price in major units from the configured Stripe price, else the default"""
        if self.price_id:
            try:
                unit_amount = self.provider.retrieve_price_amount(self.price_id)
                if unit_amount:
                    return unit_amount / 100
            except PaymentProviderError as e:
                logger.warning("Injonction price unavailable, using default", extra={"error": str(e)})
        return self.prices.injonction_default_ht

    def _envelope(self, user_id: str, procedure_id: str, kbis_file_path, attestation_file_path) -> dict:
        return encode_metadata(
            PaymentMetadata(
                user_id=user_id,
                procedure_id=procedure_id,
                is_injonction=True,
                kbis_file_path=kbis_file_path,
                attestation_file_path=attestation_file_path,
            )
        )

    def create_payment_intent(
        self,
        user_id: str,
        procedure_id: str,
        kbis_file_path: Optional[str] = None,
        attestation_file_path: Optional[str] = None,
    ) -> IntentResult:
        user = self._user(user_id)
        procedure = self._owned_procedure(user_id, procedure_id)
        self._require_injonction_stage(procedure)
        customer_id = ensure_customer(self.db, self.provider, user)

        amount_cents = ttc_minor_units(self._price_ht(), self.prices.vat_rate)
        metadata = self._envelope(user_id, procedure.id, kbis_file_path, attestation_file_path)
        intent = self.provider.create_payment_intent(
            amount_cents=amount_cents,
            currency=self.currency,
            metadata=metadata,
            description=INJONCTION_DESCRIPTION,
            customer_id=customer_id,
        )

        payment = self.payments.get_open_injonction_for_procedure(procedure.id)
        if payment is None:
            self.payments.create(
                user_id=user_id,
                amount=from_minor_units(amount_cents),
                currency=self.currency,
                status=PaymentStatus.PENDING,
                intent_id=intent.id,
                description=INJONCTION_DESCRIPTION,
                metadata=metadata,
                procedure_id=procedure.id,
            )
        else:
            self.payments.restart_with_intent(payment, intent.id)
            payment.amount = from_minor_units(amount_cents)
            payment.payment_metadata = metadata
        self.db.commit()

        logger.info(
            "Injonction payment intent created",
            extra={"user_id": user_id, "procedure_id": procedure.id, "payment_intent_id": intent.id},
        )
        return IntentResult(client_secret=intent.client_secret, payment_intent_id=intent.id, procedure_id=procedure.id)

    def create_checkout(
        self,
        user_id: str,
        procedure_id: str,
        kbis_file_path: Optional[str] = None,
        attestation_file_path: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        user = self._user(user_id)
        procedure = self._owned_procedure(user_id, procedure_id)
        self._require_injonction_stage(procedure)
        customer_id = ensure_customer(self.db, self.provider, user)

        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            lines=[injonction_checkout_line(self._price_ht(), self.prices.vat_rate)],
            currency=self.currency,
            metadata=self._envelope(user_id, procedure.id, kbis_file_path, attestation_file_path),
            success_url=success_url or f"{self.app_url}/dashboard?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url or f"{self.app_url}/dashboard?payment=cancelled",
        )
        logger.info(
            "Injonction checkout session created",
            extra={"user_id": user_id, "procedure_id": procedure.id, "session_id": session.id},
        )
        return CheckoutResult(session_id=session.id, url=session.url, procedure_id=procedure.id)

    def confirm(self, user_id: str, procedure_id: str, payment_intent_id: str) -> Procedure:
        """
        Record a succeeded injonction payment reported by the front end.

        Raises:
            InvalidRequest: The intent has not succeeded, or it was not
                created for this user's injonction on this procedure
        """
        procedure = self._owned_procedure(user_id, procedure_id)
        intent = self.provider.retrieve_payment_intent(payment_intent_id)
        if intent.status != "succeeded":
            raise InvalidRequest("Le paiement n'a pas réussi")

        envelope = decode_metadata(intent.metadata)
        if envelope.user_id != user_id or envelope.procedure_id != procedure.id or not envelope.is_injonction:
            logger.warning(
                "Injonction confirmation with an unrelated payment intent",
                extra={"user_id": user_id, "procedure_id": procedure.id, "payment_intent_id": intent.id},
            )
            raise InvalidRequest("Ce paiement ne correspond pas à cette injonction")

        payment = self.payments.get_by_intent_id(payment_intent_id)
        if payment is not None and payment.procedure_id not in (None, procedure.id):
            raise InvalidRequest("Ce paiement ne correspond pas à cette injonction")
        if payment is not None:
            self.payments.set_status(payment, PaymentStatus.SUCCEEDED)
        self.procedures.force_status(
            procedure.id,
            ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER,
            PaymentStatus.SUCCEEDED,
            payment.id if payment is not None else None,
        )
        self.db.commit()
        record_procedure_transition(ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER)

        user = self.users.get(user_id)
        if payment is not None and user is not None and user.stripe_customer_id:
            self._invoice(user.stripe_customer_id, payment, intent.id)
        return procedure

    def _invoice(self, customer_id: str, payment, intent_id: str) -> None:
        try:
            self.invoices.issue_once(
                customer_id,
                intent_id,
                [
                    ProviderLineItem(
                        amount_total=to_minor_units(payment.amount),
                        currency=payment.currency,
                        description=payment.description,
                    )
                ],
                payment.currency,
                metadata={
                    "paymentId": payment.id,
                    "paymentIntentId": intent_id,
                    "procedureId": payment.procedure_id or "",
                },
                description=payment.description or INJONCTION_DESCRIPTION,
            )
        except PaymentProviderError:
            logger.exception("Injonction invoice creation failed", extra={"payment_id": payment.id})
