"""Domain models - status vocabularies and plain dataclasses for provider objects"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ProcedureStatus(str, Enum):
    BROUILLONS = "BROUILLONS"
    NOUVEAU = "NOUVEAU"
    EN_COURS = "EN_COURS"
    ENVOYE = "ENVOYE"
    EN_ATTENTE_REPONSE = "EN_ATTENTE_REPONSE"
    EN_ATTENTE_RETOUR = "EN_ATTENTE_RETOUR"
    LRAR = "LRAR"
    LRAR_ECHEANCIER = "LRAR_ECHEANCIER"
    LRAR_FINI = "LRAR_FINI"
    INJONCTION_DE_PAIEMENT = "INJONCTION_DE_PAIEMENT"
    INJONCTION_DE_PAIEMENT_PAYER = "INJONCTION_DE_PAIEMENT_PAYER"
    INJONCTION_DE_PAIEMENT_FINI = "INJONCTION_DE_PAIEMENT_FINI"
    RESOLU = "RESOLU"
    ANNULE = "ANNULE"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"
    CANCELED = "CANCELED"


class DocumentType(str, Enum):
    FACTURE = "FACTURE"
    DEVIS = "DEVIS"
    CONTRAT = "CONTRAT"
    EMAIL = "EMAIL"
    WHATSAPP_SMS = "WHATSAPP_SMS"
    AUTRES_PREUVES = "AUTRES_PREUVES"


@dataclass
class ProviderPaymentIntent:
    """Subset of a Stripe PaymentIntent used by the gateway"""

    id: str
    client_secret: Optional[str] = None
    status: Optional[str] = None
    latest_charge: Optional[str] = None
    amount: int = 0  # minor units
    currency: Optional[str] = None
    description: Optional[str] = None
    customer: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ProviderCheckoutSession:
    """Subset of a Stripe Checkout Session"""

    id: str
    url: Optional[str] = None


@dataclass
class ProviderLineItem:
    """Line item of a completed Checkout Session"""

    amount_total: int
    currency: Optional[str]
    description: Optional[str]


@dataclass
class ProviderSubscription:
    """Subset of a Stripe Subscription"""

    id: str
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


@dataclass
class CheckoutLine:
    """Priced line to put on a Checkout Session (amount in minor units)"""

    name: str
    description: str
    unit_amount: int


@dataclass
class ProviderEvent:
    """Verified Stripe event"""

    id: str
    type: str
    data_object: dict = field(default_factory=dict)
    created: Optional[int] = None
    livemode: bool = False
