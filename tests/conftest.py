"""Pytest fixtures for testing"""

import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Generator, List, Optional

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from fairpay_gateway.api.dependencies import get_event_verifier, get_payment_provider
from fairpay_gateway.api.main import create_app
from fairpay_gateway.config import settings
from fairpay_gateway.domain.exceptions import PaymentProviderError
from fairpay_gateway.domain.models import (
    ProcedureStatus,
    ProviderCheckoutSession,
    ProviderLineItem,
    ProviderPaymentIntent,
    ProviderSubscription,
)
from fairpay_gateway.infrastructure.database.models import Base, Client, Procedure, User
from fairpay_gateway.infrastructure.database.session import get_db
from fairpay_gateway.services.events import StripeEventVerifier


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeProvider:
    """In-memory stand-in for StripePaymentProvider that records every call"""

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_on: set = set()
        self.intents: Dict[str, ProviderPaymentIntent] = {}
        self.line_items: List[ProviderLineItem] = []
        self.existing_invoice_intents: set = set()
        self.price_amount: Optional[int] = 7900
        self.subscription_status = "active"
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_fake_{self._counter}"

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if name in self.fail_on:
            raise PaymentProviderError(f"Stripe {name} failed: simulated outage")

    def calls_to(self, name: str) -> List[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def create_payment_intent(self, amount_cents, currency, metadata, description=None, customer_id=None):
        self._record(
            "create_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            metadata=metadata,
            description=description,
            customer_id=customer_id,
        )
        intent_id = self._next("pi")
        intent = ProviderPaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
            amount=amount_cents,
            currency=currency,
            description=description,
            customer=customer_id,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, intent_id):
        self._record("retrieve_payment_intent", intent_id=intent_id)
        if intent_id in self.intents:
            return self.intents[intent_id]
        return ProviderPaymentIntent(id=intent_id, status="succeeded", latest_charge=f"ch_for_{intent_id}")

    def create_checkout_session(self, customer_id, lines, currency, metadata, success_url, cancel_url, coupon_id=None):
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            lines=lines,
            currency=currency,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            coupon_id=coupon_id,
        )
        session_id = self._next("cs")
        return ProviderCheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def list_checkout_line_items(self, session_id):
        self._record("list_checkout_line_items", session_id=session_id)
        return list(self.line_items)

    def create_customer(self, email, user_id):
        self._record("create_customer", email=email, user_id=user_id)
        return self._next("cus")

    def retrieve_price_amount(self, price_id):
        self._record("retrieve_price_amount", price_id=price_id)
        return self.price_amount

    def create_invoice(self, customer_id, description, metadata):
        self._record("create_invoice", customer_id=customer_id, description=description, metadata=metadata)
        return self._next("in")

    def create_invoice_item(self, customer_id, invoice_id, amount_cents, currency, description):
        self._record(
            "create_invoice_item",
            customer_id=customer_id,
            invoice_id=invoice_id,
            amount_cents=amount_cents,
            currency=currency,
            description=description,
        )
        return self._next("ii")

    def finalize_invoice(self, invoice_id):
        self._record("finalize_invoice", invoice_id=invoice_id)

    def pay_invoice(self, invoice_id):
        self._record("pay_invoice", invoice_id=invoice_id)

    def has_invoice_for_intent(self, customer_id, intent_id):
        self._record("has_invoice_for_intent", customer_id=customer_id, intent_id=intent_id)
        return intent_id in self.existing_invoice_intents

    def create_subscription(self, customer_id, price_id, metadata):
        self._record("create_subscription", customer_id=customer_id, price_id=price_id, metadata=metadata)
        return ProviderSubscription(id=self._next("sub"), status=self.subscription_status, price_id=price_id)

    def set_cancel_at_period_end(self, subscription_id, cancel=True):
        self._record("set_cancel_at_period_end", subscription_id=subscription_id, cancel=cancel)
        return ProviderSubscription(id=subscription_id, status="active", cancel_at_period_end=cancel)


def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": data_object},
    }


def bearer(user_id: str, secret: Optional[str] = None) -> Dict[str, str]:
    token = jwt.encode({"userId": user_id}, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider() -> FakeStripeProvider:
    return FakeStripeProvider()


@pytest.fixture
def client(db: Session, provider: FakeStripeProvider) -> TestClient:
    """Create FastAPI test client with test database and fake Stripe"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_event_verifier] = lambda: StripeEventVerifier(TEST_WEBHOOK_SECRET)
    return TestClient(app)


@pytest.fixture
def post_event(client: TestClient):
    """Send a signed webhook event"""

    def _post(event: Dict[str, Any]):
        payload = json.dumps(event)
        return client.post(
            "/v1/stripe/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
        )

    return _post


@pytest.fixture
def user(db: Session) -> User:
    user = User(id="user-1", email="cabinet@example.fr", stripe_customer_id="cus_123")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_user(db: Session) -> User:
    user = User(id="user-2", email="autre@example.fr", stripe_customer_id="cus_456")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_procedure(db: Session, user: User):
    """Factory for persisted procedures with their client"""

    def _make(status: ProcedureStatus = ProcedureStatus.BROUILLONS, owner: Optional[User] = None, siret: Optional[str] = None):
        debtor = Client(nom="Martin", prenom="Paul", siret=siret or f"DRAFT-{uuid.uuid4().hex[:10]}")
        db.add(debtor)
        db.flush()
        procedure = Procedure(
            user_id=(owner or user).id,
            client_id=debtor.id,
            status=status,
            contexte="Facture impayée",
        )
        db.add(procedure)
        db.commit()
        return procedure

    return _make


@pytest.fixture
def procedure_data() -> Dict[str, Any]:
    """Draft snapshot as the web app serializes it"""
    return {
        "nom": "Durand",
        "prenom": "Claire",
        "siret": "12345678900011",
        "nomSociete": "Durand SARL",
        "ville": "Lyon",
        "contexte": "Prestation non réglée",
        "dateFactureEchue": "2024-03-01",
        "montantDue": "1250.50",
        "montantTTC": True,
        "hasEcheancier": False,
        "documents": [
            {"type": "FACTURE", "fileName": "f-001.pdf", "filePath": "uploads/f-001.pdf", "fileSize": 2048}
        ],
        "echeancier": [],
    }
