"""SQLAlchemy ORM models for dossiers, payments and subscriptions"""

import uuid
from sqlalchemy import Column, String, Boolean, Integer, Numeric, DateTime, ForeignKey, Text, JSON
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from fairpay_gateway.domain.models import DocumentType, PaymentStatus, ProcedureStatus, SubscriptionStatus

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    # Stored as plain strings so SQLite test databases and Postgres agree
    return SAEnum(enum_cls, native_enum=False, length=40, values_callable=lambda e: [m.value for m in e])


class User(Base):
    """Account owning dossiers, payments and subscriptions"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(Text, nullable=False, unique=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    payments = relationship("Payment", back_populates="user")
    procedures = relationship("Procedure", back_populates="user")
    subscriptions = relationship("Subscription", back_populates="user")


class Client(Base):
    """Debtor targeted by a procedure"""

    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=_uuid)
    nom = Column(Text, nullable=False)
    prenom = Column(Text, nullable=False)
    siret = Column(String(64), nullable=False, unique=True)
    nom_societe = Column(Text, nullable=True)
    adresse = Column(Text, nullable=True)
    code_postal = Column(String(16), nullable=True)
    ville = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    telephone = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    procedures = relationship("Procedure", back_populates="client")


class Procedure(Base):
    """Debt-collection dossier"""

    __tablename__ = "procedures"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False)
    status = Column(_enum(ProcedureStatus), nullable=False, default=ProcedureStatus.BROUILLONS)
    payment_status = Column(_enum(PaymentStatus), nullable=True)
    # Plain reference; the payment side carries the foreign key
    payment_id = Column(String(36), nullable=True)

    contexte = Column(Text, nullable=True)
    date_facture_echue = Column(DateTime(timezone=True), nullable=True)
    montant_due = Column(Numeric(12, 2), nullable=True)
    montant_ttc = Column(Boolean, nullable=False, default=True)
    date_relance = Column(DateTime(timezone=True), nullable=True)
    date_relance2 = Column(DateTime(timezone=True), nullable=True)
    has_facturation = Column(Boolean, nullable=False, default=False)
    has_echeancier = Column(Boolean, nullable=False, default=False)
    echeancier = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="procedures")
    client = relationship("Client", back_populates="procedures")
    documents = relationship("Document", back_populates="procedure", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="procedure")


class Document(Base):
    """Evidence file attached to a procedure"""

    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    procedure_id = Column(String(36), ForeignKey("procedures.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(_enum(DocumentType), nullable=False)
    file_name = Column(Text, nullable=False)
    file_path = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    mime_type = Column(String(255), nullable=False)
    numero_facture = Column(Text, nullable=True)
    date_facture_echue = Column(DateTime(timezone=True), nullable=True)
    montant_due = Column(Numeric(12, 2), nullable=True)
    montant_ttc = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    procedure = relationship("Procedure", back_populates="documents")


class Payment(Base):
    """Local mirror of a Stripe payment intent"""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    procedure_id = Column(String(36), ForeignKey("procedures.id"), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, unique=True)
    stripe_charge_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="eur")
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    description = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="payments")
    procedure = relationship("Procedure", back_populates="payments")


class Subscription(Base):
    """Local mirror of a Stripe subscription"""

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=False, unique=True)
    stripe_price_id = Column(String(255), nullable=True)
    status = Column(_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.TRIALING)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")


class ProcessedWebhookEvent(Base):
    """Ledger of Stripe event ids already handled"""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(128), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
