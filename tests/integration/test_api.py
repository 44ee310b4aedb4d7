"""Integration tests for API endpoints"""

import json
from decimal import Decimal

import jwt
from fastapi.testclient import TestClient

from fairpay_gateway.api.v1 import webhook
from fairpay_gateway.config import settings
from fairpay_gateway.domain.models import (
    PaymentStatus,
    ProcedureStatus,
    ProviderPaymentIntent,
    SubscriptionStatus,
)
from fairpay_gateway.infrastructure.database.models import Payment, Procedure, Subscription
from fairpay_gateway.services.reconciliation import ReconciliationService
from conftest import bearer, make_event, sign_payload


def add_payment(db, user, status=PaymentStatus.FAILED, intent_id="pi_old", procedure_id=None):
    payment = Payment(
        user_id=user.id,
        procedure_id=procedure_id,
        stripe_payment_intent_id=intent_id,
        amount=Decimal("214.80"),
        currency="eur",
        status=status,
        description="Paiement de dossier",
    )
    db.add(payment)
    db.commit()
    return payment


def test_health_endpoint(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": settings.service_name}


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"


def test_metrics_endpoint(client: TestClient, post_event):
    post_event(make_event("invoice.paid", {"id": "in_1"}))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "fairpay_webhook_events_total" in response.text
    assert "http_request_duration_seconds" in response.text


class TestStripeWebhook:
    def test_missing_signature(self, client: TestClient, db):
        response = client.post("/v1/stripe/webhook", content=json.dumps(make_event("invoice.paid", {})))

        assert response.status_code == 400
        assert response.json() == {"error": "Signature manquante"}

    def test_invalid_signature(self, client: TestClient, db):
        payload = json.dumps(make_event("payment_intent.succeeded", {"id": "pi_1"}))

        response = client.post(
            "/v1/stripe/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Signature invalide"}
        assert db.query(Payment).count() == 0

    def test_unknown_event_type_acknowledged(self, post_event):
        response = post_event(make_event("invoice.paid", {"id": "in_1"}))

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_checkout_completed_reconciles_and_dedupes(self, post_event, db, user, make_procedure, provider):
        draft = make_procedure()
        event = make_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "payment_status": "paid",
                "payment_intent": "pi_checkout",
                "amount_total": 21480,
                "currency": "eur",
                "customer": "cus_123",
                "metadata": {"userId": user.id, "procedureId": draft.id},
            },
            event_id="evt_checkout",
        )

        first = post_event(event)
        second = post_event(event)

        assert first.status_code == 200
        assert second.status_code == 200
        db.refresh(draft)
        assert draft.status == ProcedureStatus.NOUVEAU
        assert db.query(Payment).count() == 1
        assert len(provider.calls_to("create_invoice")) == 1

    def test_payment_failed_creates_recoverable_draft(self, post_event, db, user, procedure_data):
        event = make_event(
            "payment_intent.payment_failed",
            {
                "id": "pi_failed",
                "amount": 21480,
                "currency": "eur",
                "metadata": {"userId": user.id, "procedureData": json.dumps(procedure_data)},
            },
        )

        response = post_event(event)

        assert response.status_code == 200
        procedure = db.query(Procedure).one()
        assert procedure.status == ProcedureStatus.BROUILLONS
        assert procedure.payment_status == PaymentStatus.FAILED

    def test_subscription_deleted(self, post_event, db, user):
        post_event(make_event("customer.subscription.created", {"id": "sub_1", "status": "active", "customer": "cus_123"}))

        response = post_event(
            make_event("customer.subscription.deleted", {"id": "sub_1", "status": "canceled", "customer": "cus_123"})
        )

        assert response.status_code == 200
        assert db.query(Subscription).one().status == SubscriptionStatus.CANCELED

    def test_event_dispatched_in_threadpool(self, post_event, monkeypatch):
        dispatched = []
        real_run_in_threadpool = webhook.run_in_threadpool

        async def recording_run_in_threadpool(func, *args, **kwargs):
            dispatched.append(func.__name__)
            return await real_run_in_threadpool(func, *args, **kwargs)

        monkeypatch.setattr(webhook, "run_in_threadpool", recording_run_in_threadpool)

        response = post_event(make_event("invoice.paid", {"id": "in_1"}))

        assert response.status_code == 200
        assert dispatched == ["dispatch"]

    def test_handler_failure_returns_500(self, post_event, monkeypatch, user):
        def boom(self, payload):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(ReconciliationService, "handle_payment_intent_succeeded", boom)

        response = post_event(make_event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"userId": user.id}}))

        assert response.status_code == 500
        assert response.json() == {"error": "Erreur serveur"}


class TestRetryPayment:
    def test_requires_token(self, client: TestClient):
        response = client.post("/v1/payments/retry", json={"paymentId": "pay-1"})

        assert response.status_code == 401
        assert response.json() == {"error": "Non autorisé"}

    def test_rejects_bad_token(self, client: TestClient):
        response = client.post(
            "/v1/payments/retry", json={"paymentId": "pay-1"}, headers=bearer("user-1", secret="other-secret")
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Token invalide"}

    def test_accepts_sub_claim(self, client: TestClient, db, user):
        token = jwt.encode({"sub": user.id}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

        response = client.post(
            "/v1/payments/retry", json={"paymentId": "missing"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 404

    def test_requires_payment_id(self, client: TestClient, user):
        response = client.post("/v1/payments/retry", json={}, headers=bearer(user.id))

        assert response.status_code == 400
        assert response.json() == {"error": "paymentId requis"}

    def test_missing_body(self, client: TestClient, user):
        response = client.post("/v1/payments/retry", headers=bearer(user.id))

        assert response.status_code == 400

    def test_unknown_payment(self, client: TestClient, db, user):
        response = client.post("/v1/payments/retry", json={"paymentId": "missing"}, headers=bearer(user.id))

        assert response.status_code == 404

    def test_succeeded_payment_not_retryable(self, client: TestClient, db, user):
        payment = add_payment(db, user, status=PaymentStatus.SUCCEEDED)

        response = client.post("/v1/payments/retry", json={"paymentId": payment.id}, headers=bearer(user.id))

        assert response.status_code == 404

    def test_retry_success(self, client: TestClient, db, user, provider):
        payment = add_payment(db, user)

        response = client.post("/v1/payments/retry", json={"paymentId": payment.id}, headers=bearer(user.id))

        assert response.status_code == 200
        data = response.json()
        assert data["paymentId"] == payment.id
        assert data["paymentIntentId"] != "pi_old"
        assert data["clientSecret"] == f"{data['paymentIntentId']}_secret"
        db.refresh(payment)
        assert payment.status == PaymentStatus.PENDING
        assert payment.stripe_payment_intent_id == data["paymentIntentId"]

    def test_provider_failure_returns_500(self, client: TestClient, db, user, provider):
        provider.fail_on.add("create_payment_intent")
        payment = add_payment(db, user)

        response = client.post("/v1/payments/retry", json={"paymentId": payment.id}, headers=bearer(user.id))

        assert response.status_code == 500
        assert "simulated outage" in response.json()["error"]
        db.refresh(payment)
        assert payment.status == PaymentStatus.FAILED
        assert payment.stripe_payment_intent_id == "pi_old"


def test_unpaid_lists_failed_payments(client: TestClient, db, user):
    add_payment(db, user, status=PaymentStatus.FAILED, intent_id="pi_a")
    add_payment(db, user, status=PaymentStatus.SUCCEEDED, intent_id="pi_b")

    response = client.get("/v1/payments/unpaid", headers=bearer(user.id))

    assert response.status_code == 200
    data = response.json()
    assert data["hasUnpaid"] is True
    assert [p["status"] for p in data["payments"]] == ["FAILED"]
    assert data["subscriptions"] == []


def test_unpaid_empty(client: TestClient, user):
    response = client.get("/v1/payments/unpaid", headers=bearer(user.id))

    assert response.json() == {"hasUnpaid": False, "payments": [], "subscriptions": []}


def test_checkout_session_endpoint(client: TestClient, db, user, procedure_data):
    response = client.post(
        "/v1/checkout/session",
        json={"procedureData": procedure_data, "hasFacturation": False},
        headers=bearer(user.id),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["sessionId"]
    assert data["url"].endswith(data["sessionId"])
    assert db.query(Procedure).one().id == data["procedureId"]


def test_checkout_session_rejects_malformed_snapshot(client: TestClient, user):
    response = client.post(
        "/v1/checkout/session",
        json={"procedureData": {"documents": [{"type": "FACTURE"}]}},
        headers=bearer(user.id),
    )

    assert response.status_code == 400
    assert "error" in response.json()


def test_payment_intent_rejects_zero_amount(client: TestClient, user):
    response = client.post(
        "/v1/checkout/payment-intent",
        json={"amount": 0, "procedureId": "proc-1"},
        headers=bearer(user.id),
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Montant invalide"}


def test_injonction_foreign_procedure_forbidden(client: TestClient, user, other_user, make_procedure):
    procedure = make_procedure(status=ProcedureStatus.INJONCTION_DE_PAIEMENT, owner=other_user)

    response = client.post(
        "/v1/injonction/payment-intent", json={"procedureId": procedure.id}, headers=bearer(user.id)
    )

    assert response.status_code == 403


def test_injonction_checkout_wrong_stage(client: TestClient, user, make_procedure):
    procedure = make_procedure(status=ProcedureStatus.NOUVEAU)

    response = client.post("/v1/injonction/checkout", json={"procedureId": procedure.id}, headers=bearer(user.id))

    assert response.status_code == 400


def test_injonction_confirm(client: TestClient, db, user, make_procedure, provider):
    procedure = make_procedure(status=ProcedureStatus.INJONCTION_DE_PAIEMENT)
    provider.intents["pi_paid_elsewhere"] = ProviderPaymentIntent(
        id="pi_paid_elsewhere",
        status="succeeded",
        metadata={"userId": user.id, "procedureId": procedure.id, "isInjonction": "true"},
    )

    response = client.post(
        "/v1/injonction/confirm",
        json={"procedureId": procedure.id, "paymentIntentId": "pi_paid_elsewhere"},
        headers=bearer(user.id),
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    db.refresh(procedure)
    assert procedure.status == ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER


def test_injonction_confirm_rejects_unrelated_intent(client: TestClient, db, user, make_procedure, provider):
    procedure = make_procedure(status=ProcedureStatus.INJONCTION_DE_PAIEMENT)
    provider.intents["pi_other_dossier"] = ProviderPaymentIntent(
        id="pi_other_dossier",
        status="succeeded",
        metadata={"userId": user.id, "procedureId": "proc-elsewhere", "isInjonction": "true"},
    )

    response = client.post(
        "/v1/injonction/confirm",
        json={"procedureId": procedure.id, "paymentIntentId": "pi_other_dossier"},
        headers=bearer(user.id),
    )

    assert response.status_code == 400
    db.refresh(procedure)
    assert procedure.status == ProcedureStatus.INJONCTION_DE_PAIEMENT


def test_cancel_subscription_without_subscription(client: TestClient, user):
    response = client.post("/v1/subscriptions/cancel", headers=bearer(user.id))

    assert response.status_code == 400
    assert response.json() == {"error": "Aucun abonnement actif"}


def test_cancel_subscription(client: TestClient, db, user, provider):
    db.add(Subscription(user_id=user.id, stripe_subscription_id="sub_1", status=SubscriptionStatus.ACTIVE))
    db.commit()

    response = client.post("/v1/subscriptions/cancel", headers=bearer(user.id))

    assert response.status_code == 200
    assert response.json()["cancelAtPeriodEnd"] is True
    assert db.query(Subscription).one().cancel_at_period_end is True
    assert provider.calls_to("set_cancel_at_period_end") == [{"subscription_id": "sub_1", "cancel": True}]
