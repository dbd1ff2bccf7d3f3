"""
Integration tests for the Mercado Pago webhook endpoint.

Tests cover:
- x-signature verification (valid, invalid, missing)
- Malformed bodies and notifications without type or id
- Source IP allow-list in production
- Authenticated notifications are always acknowledged
"""

import hashlib
import hmac
import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.routes import webhooks_mercadopago
from src.api.routes.webhooks_mercadopago import (
    build_signature_manifest,
    get_webhook_settings,
    parse_signature_header,
    verify_mercadopago_signature,
)
from src.config.payment_settings import PaymentSettings
from src.database.session import get_db_session
from src.models.transaction import Transaction
from src.platform.payment_audit import PaymentAuditEventType

WEBHOOK_SECRET = "whsec-test-secret"


def _sign(data_id: str, request_id: str, ts: str = "1742505638683", secret: str = WEBHOOK_SECRET) -> str:
    manifest = build_signature_manifest(data_id, request_id, ts)
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def _settings(**overrides) -> PaymentSettings:
    values = {
        "environment": "test",
        "mercadopago_access_token": None,
        "mercadopago_webhook_secret": WEBHOOK_SECRET,
    }
    values.update(overrides)
    return PaymentSettings(**values)


@pytest.fixture
def webhook_settings():
    return {"value": _settings()}


@pytest.fixture
def client(db_session, webhook_settings):
    app = FastAPI()
    app.include_router(webhooks_mercadopago.router)

    def override_get_db_session():
        yield db_session

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_webhook_settings] = lambda: webhook_settings["value"]
    yield TestClient(app)
    app.dependency_overrides.clear()


def _payment_body(payment_id: str, **data) -> dict:
    return {"type": "payment", "action": "payment.updated", "id": 9001, "data": {"id": payment_id, **data}}


class TestSignatureHelpers:

    def test_parse_header(self):
        assert parse_signature_header("ts=123, v1=abc") == {"ts": "123", "v1": "abc"}
        assert parse_signature_header(None) == {}

    def test_manifest_lowercases_alphanumeric_ids(self):
        assert build_signature_manifest("ABC123", "req-1", "10") == "id:abc123;request-id:req-1;ts:10;"
        assert build_signature_manifest("a-B", "req-1", "10") == "id:a-B;request-id:req-1;ts:10;"

    def test_verify(self):
        header = _sign("123", "req-1")
        assert verify_mercadopago_signature(header, "req-1", "123", WEBHOOK_SECRET)
        assert not verify_mercadopago_signature(header, "req-2", "123", WEBHOOK_SECRET)
        assert not verify_mercadopago_signature(header, "req-1", "123", "other-secret")
        assert not verify_mercadopago_signature("ts=1", "req-1", "123", WEBHOOK_SECRET)


@pytest.mark.security
class TestWebhookAuthentication:

    def test_missing_signature_is_rejected(self, client, audit_events):
        response = client.post("/api/webhooks/mercadopago", json=_payment_body("123", status="approved"))

        assert response.status_code == 401
        assert audit_events(PaymentAuditEventType.WEBHOOK_MISSING_SIGNATURE)

    def test_invalid_signature_is_rejected(self, client, audit_events):
        response = client.post(
            "/api/webhooks/mercadopago",
            json=_payment_body("123", status="approved"),
            headers={"x-signature": _sign("123", "req-1", secret="wrong"), "x-request-id": "req-1"},
        )

        assert response.status_code == 401
        assert audit_events(PaymentAuditEventType.WEBHOOK_INVALID_SIGNATURE)

    def test_valid_signature_is_processed(self, client, make_account, make_transaction, db_session):
        account = make_account()
        transaction = make_transaction(account, provider_preference_id="pref-w1")

        response = client.post(
            "/api/webhooks/mercadopago",
            json=_payment_body("555", status="approved", preference_id="pref-w1"),
            headers={"x-signature": _sign("555", "req-9"), "x-request-id": "req-9"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["result"]["processed"] is True
        db_session.refresh(transaction)
        assert transaction.status == "completed"

    def test_no_secret_configured_skips_verification(self, client, webhook_settings):
        webhook_settings["value"] = _settings(mercadopago_webhook_secret=None)

        response = client.post("/api/webhooks/mercadopago", json=_payment_body("777", status="approved"))

        assert response.status_code == 200
        assert response.json()["result"]["skipped_reason"] == "orphan"

    def test_unlisted_ip_rejected_in_production(self, client, webhook_settings, audit_events):
        webhook_settings["value"] = _settings(environment="production", webhook_allowed_ips=["10.0.0.1"])

        response = client.post(
            "/api/webhooks/mercadopago",
            json=_payment_body("123", status="approved"),
            headers={"x-forwarded-for": "203.0.113.5"},
        )

        assert response.status_code == 403
        assert audit_events(PaymentAuditEventType.WEBHOOK_IP_REJECTED)


class TestWebhookStructure:

    def test_invalid_json(self, client):
        response = client.post(
            "/api/webhooks/mercadopago",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    def test_missing_type_and_id(self, client, audit_events):
        response = client.post("/api/webhooks/mercadopago", json={"hello": "world"})

        assert response.status_code == 400
        assert audit_events(PaymentAuditEventType.WEBHOOK_INVALID_STRUCTURE)

    def test_legacy_query_notification_is_acknowledged(self, client, db_session):
        response = client.post(
            "/api/webhooks/mercadopago?topic=merchant_order&id=42",
            headers={"x-signature": _sign("42", "req-3"), "x-request-id": "req-3"},
        )

        assert response.status_code == 200
        assert response.json()["result"]["skipped_reason"] == "unknown_type"
        assert db_session.query(Transaction).count() == 0
