"""Data access layer for dossiers, payments and subscriptions"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from fairpay_gateway.domain.models import PaymentStatus, ProcedureStatus, ProviderSubscription, SubscriptionStatus
from fairpay_gateway.domain.snapshot import DRAFT_SIRET_PREFIX, DocumentSnapshot, ProcedureSnapshot
from fairpay_gateway.domain.subscriptions import CURRENT_SUBSCRIPTION_STATUSES, UNPAID_SUBSCRIPTION_STATUSES
from fairpay_gateway.domain.transitions import RETRYABLE_PAYMENT_STATUSES, ensure_payment_transition
from fairpay_gateway.infrastructure.database.models import (
    Client,
    Document,
    Payment,
    ProcessedWebhookEvent,
    Procedure,
    Subscription,
    User,
)
from fairpay_gateway.utils.date_utils import utcnow

PLACEHOLDER_NAME = "Non renseigné"
DEFAULT_FILE_NAME = "document"
DEFAULT_MIME_TYPE = "application/octet-stream"

# Client contact fields refreshed from a snapshot only when the snapshot carries a value
_CONTACT_FIELDS = ("nom_societe", "adresse", "code_postal", "ville", "email", "telephone")


class UserRepository:
    """Repository for user accounts"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_by_customer_id(self, customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            return None
        return self.db.query(User).filter(User.stripe_customer_id == customer_id).first()

    def set_customer_id(self, user: User, customer_id: str) -> User:
        user.stripe_customer_id = customer_id
        self.db.flush()
        return user

    def set_subscription_id(self, user_id: str, subscription_id: Optional[str]) -> None:
        """Stamp (or clear, with None) the user's current subscription id"""
        self.db.query(User).filter(User.id == user_id).update(
            {User.stripe_subscription_id: subscription_id}, synchronize_session="fetch"
        )


class ClientRepository:
    """Repository for debtor clients, keyed by SIRET"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_siret(self, siret: str) -> Optional[Client]:
        return self.db.query(Client).filter(Client.siret == siret).first()

    def _create(self, snapshot: ProcedureSnapshot, siret: str) -> Client:
        client = Client(
            nom=snapshot.nom or PLACEHOLDER_NAME,
            prenom=snapshot.prenom or PLACEHOLDER_NAME,
            siret=siret,
        )
        for field in _CONTACT_FIELDS:
            setattr(client, field, getattr(snapshot, field) or None)
        self.db.add(client)
        self.db.flush()
        return client

    def _refresh_contact(self, client: Client, snapshot: ProcedureSnapshot) -> Client:
        for field in _CONTACT_FIELDS:
            value = getattr(snapshot, field)
            if value:
                setattr(client, field, value)
        self.db.flush()
        return client

    def find_or_create(self, snapshot: ProcedureSnapshot) -> Client:
        """
        Resolve the snapshot's debtor by SIRET.

        Known SIRET: contact fields refreshed where the snapshot has a value.
        Unknown SIRET: new client. No SIRET at all: new placeholder client.
        """
        if not snapshot.siret:
            return self._create(snapshot, f"{DRAFT_SIRET_PREFIX}{uuid.uuid4().hex[:16]}")

        client = self.get_by_siret(snapshot.siret)
        if client is None:
            return self._create(snapshot, snapshot.siret)
        return self._refresh_contact(client, snapshot)

    def resolve_for_draft(self, current: Client, snapshot: ProcedureSnapshot) -> Client:
        """
        Client for a draft being completed by a payment.

        A placeholder SIRET replaced by a real one moves the draft to the
        client owning that SIRET (created if needed). Same SIRET: identity and
        contact refreshed in place. No real SIRET: client left untouched.
        """
        if not snapshot.has_real_siret:
            return current

        if current.siret != snapshot.siret:
            return self.find_or_create(snapshot)

        current.nom = snapshot.nom or current.nom
        current.prenom = snapshot.prenom or current.prenom
        return self._refresh_contact(current, snapshot)


class DocumentRepository:
    """Repository for procedure documents"""

    def __init__(self, db: Session):
        self.db = db

    def create_many(self, procedure_id: str, documents: List[DocumentSnapshot]) -> List[Document]:
        rows = [
            Document(
                procedure_id=procedure_id,
                type=doc.type,
                file_name=doc.file_name or DEFAULT_FILE_NAME,
                file_path=doc.file_path,
                file_size=doc.file_size or 0,
                mime_type=doc.mime_type or DEFAULT_MIME_TYPE,
                numero_facture=doc.numero_facture,
                date_facture_echue=doc.date_facture_echue,
                montant_due=doc.montant_due,
                montant_ttc=doc.montant_ttc,
            )
            for doc in documents
        ]
        self.db.add_all(rows)
        self.db.flush()
        return rows

    def delete_for_procedure(self, procedure_id: str) -> int:
        count = self.db.query(Document).filter(Document.procedure_id == procedure_id).delete(
            synchronize_session="fetch"
        )
        self.db.flush()
        return count


class PaymentRepository:
    """Repository for payments mirrored from Stripe payment intents"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_intent_id(self, intent_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.stripe_payment_intent_id == intent_id).first()

    def create(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        status: PaymentStatus,
        intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        procedure_id: Optional[str] = None,
    ) -> Payment:
        payment = Payment(
            user_id=user_id,
            procedure_id=procedure_id,
            stripe_payment_intent_id=intent_id,
            stripe_charge_id=charge_id,
            amount=amount,
            currency=currency,
            status=status,
            description=description,
            payment_metadata=metadata,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def upsert_by_intent(
        self,
        intent_id: str,
        status: PaymentStatus,
        user_id: str,
        amount: Decimal,
        currency: str,
        charge_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Move the payment for an intent to status, creating it when absent.

        Raises:
            InvalidTransition: When the stored payment is already SUCCEEDED
                and status is anything else
        """
        payment = self.get_by_intent_id(intent_id)
        if payment is None:
            return self.create(
                user_id=user_id,
                amount=amount,
                currency=currency,
                status=status,
                intent_id=intent_id,
                charge_id=charge_id,
                description=description,
                metadata=metadata,
            )

        ensure_payment_transition(payment.status, status)
        payment.status = status
        if charge_id:
            payment.stripe_charge_id = charge_id
        self.db.flush()
        return payment

    def set_status(self, payment: Payment, status: PaymentStatus) -> Payment:
        ensure_payment_transition(payment.status, status)
        payment.status = status
        self.db.flush()
        return payment

    def link_procedure(self, payment: Payment, procedure_id: str) -> Payment:
        payment.procedure_id = procedure_id
        self.db.flush()
        return payment

    def restart_with_intent(self, payment: Payment, intent_id: str) -> Payment:
        """Point an existing payment at a fresh intent and reopen it"""
        ensure_payment_transition(payment.status, PaymentStatus.PENDING)
        payment.stripe_payment_intent_id = intent_id
        payment.status = PaymentStatus.PENDING
        self.db.flush()
        return payment

    def get_retryable_for_user(self, payment_id: str, user_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.id == payment_id,
                Payment.user_id == user_id,
                Payment.status.in_(RETRYABLE_PAYMENT_STATUSES),
            )
            .first()
        )

    def get_open_injonction_for_procedure(self, procedure_id: str) -> Optional[Payment]:
        """Most recent PENDING/FAILED injonction payment of a procedure (dossier payments are skipped)"""
        candidates = (
            self.db.query(Payment)
            .filter(
                Payment.procedure_id == procedure_id,
                Payment.status.in_(RETRYABLE_PAYMENT_STATUSES),
            )
            .order_by(Payment.created_at.desc())
            .all()
        )
        for payment in candidates:
            if str((payment.payment_metadata or {}).get("isInjonction", "")).lower() == "true":
                return payment
        return None

    def get_unpaid_for_user(self, user_id: str, limit: int = 5) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.user_id == user_id, Payment.status.in_(RETRYABLE_PAYMENT_STATUSES))
            .order_by(Payment.created_at.desc())
            .limit(limit)
            .all()
        )


class ProcedureRepository:
    """Repository for procedures"""

    def __init__(self, db: Session):
        self.db = db
        self.documents = DocumentRepository(db)

    def get(self, procedure_id: Optional[str]) -> Optional[Procedure]:
        if not procedure_id:
            return None
        return self.db.get(Procedure, procedure_id)

    def _apply_case_fields(self, procedure: Procedure, snapshot: ProcedureSnapshot) -> None:
        procedure.contexte = snapshot.contexte
        procedure.date_facture_echue = snapshot.date_facture_echue or utcnow()
        procedure.montant_due = snapshot.montant_due
        procedure.montant_ttc = True if snapshot.montant_ttc is None else snapshot.montant_ttc
        procedure.date_relance = snapshot.date_relance
        procedure.date_relance2 = snapshot.date_relance2
        procedure.has_echeancier = snapshot.has_echeancier
        procedure.echeancier = snapshot.schedule_json()

    def create_from_snapshot(
        self,
        user_id: str,
        client_id: str,
        snapshot: ProcedureSnapshot,
        status: ProcedureStatus,
        payment_status: Optional[PaymentStatus] = None,
        payment_id: Optional[str] = None,
        has_facturation: bool = False,
    ) -> Procedure:
        """Materialize a procedure and its documents from a draft snapshot"""
        procedure = Procedure(
            user_id=user_id,
            client_id=client_id,
            status=status,
            payment_status=payment_status,
            payment_id=payment_id,
            has_facturation=has_facturation,
        )
        self._apply_case_fields(procedure, snapshot)
        self.db.add(procedure)
        self.db.flush()
        if snapshot.documents:
            self.documents.create_many(procedure.id, snapshot.documents)
        return procedure

    def apply_snapshot(
        self,
        procedure: Procedure,
        client_id: str,
        snapshot: ProcedureSnapshot,
        has_facturation: bool = False,
    ) -> Procedure:
        """Overwrite a draft's client, case fields and documents from a snapshot"""
        procedure.client_id = client_id
        procedure.has_facturation = has_facturation
        self._apply_case_fields(procedure, snapshot)
        self.documents.delete_for_procedure(procedure.id)
        if snapshot.documents:
            self.documents.create_many(procedure.id, snapshot.documents)
        self.db.flush()
        return procedure

    def force_status(
        self,
        procedure_id: str,
        status: ProcedureStatus,
        payment_status: Optional[PaymentStatus] = None,
        payment_id: Optional[str] = None,
    ) -> Optional[Procedure]:
        """
        Set status (and payment mirror) regardless of the stored status.

        Returns None when the procedure does not exist.
        """
        procedure = self.get(procedure_id)
        if procedure is None:
            return None
        procedure.status = status
        if payment_status is not None:
            procedure.payment_status = payment_status
        if payment_id is not None:
            procedure.payment_id = payment_id
        self.db.flush()
        return procedure

    def revert_to_draft(self, procedure_id: str) -> Optional[Procedure]:
        return self.force_status(procedure_id, ProcedureStatus.BROUILLONS, PaymentStatus.FAILED)


class SubscriptionRepository:
    """Repository for subscriptions mirrored from Stripe"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
            .first()
        )

    def upsert(
        self,
        user_id: str,
        subscription: ProviderSubscription,
        status: SubscriptionStatus,
    ) -> Subscription:
        """Create on first sight, otherwise refresh the mutable fields"""
        row = self.get_by_stripe_id(subscription.id)
        if row is None:
            row = Subscription(
                user_id=user_id,
                stripe_subscription_id=subscription.id,
                stripe_price_id=subscription.price_id,
            )
            self.db.add(row)

        row.status = status
        row.current_period_start = subscription.current_period_start
        row.current_period_end = subscription.current_period_end
        row.cancel_at_period_end = subscription.cancel_at_period_end
        row.canceled_at = subscription.canceled_at
        if subscription.price_id:
            row.stripe_price_id = subscription.price_id
        self.db.flush()
        return row

    def cancel_all(self, user_id: str, stripe_subscription_id: str, canceled_at: Optional[datetime] = None) -> int:
        """Mark every row for the subscription CANCELED; never inserts"""
        count = (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.stripe_subscription_id == stripe_subscription_id,
            )
            .update(
                {
                    Subscription.status: SubscriptionStatus.CANCELED,
                    Subscription.canceled_at: canceled_at or utcnow(),
                },
                synchronize_session="fetch",
            )
        )
        self.db.flush()
        return count

    def get_current_for_user(self, user_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(CURRENT_SUBSCRIPTION_STATUSES),
            )
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def has_current(self, user_id: str) -> bool:
        return self.get_current_for_user(user_id) is not None

    def get_unpaid_for_user(self, user_id: str) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(UNPAID_SUBSCRIPTION_STATUSES),
            )
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def set_cancel_at_period_end(self, stripe_subscription_id: str, value: bool) -> Optional[Subscription]:
        row = self.get_by_stripe_id(stripe_subscription_id)
        if row is None:
            return None
        row.cancel_at_period_end = value
        self.db.flush()
        return row


class WebhookEventRepository:
    """Ledger of processed Stripe event ids"""

    def __init__(self, db: Session):
        self.db = db

    def is_processed(self, event_id: str) -> bool:
        return self.db.get(ProcessedWebhookEvent, event_id) is not None

    def mark_processed(self, event_id: str, event_type: str) -> None:
        self.db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, processed_at=utcnow()))
        self.db.flush()

    def prune(self, older_than: datetime) -> int:
        count = (
            self.db.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.processed_at < older_than)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return count
