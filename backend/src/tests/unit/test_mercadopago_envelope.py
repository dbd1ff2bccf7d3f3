"""
Unit tests for Mercado Pago notification parsing.

Covers the webhook, action-only and legacy IPN shapes, enrichment from a
fetched object, and the deduplication key.
"""

from src.integrations.mercadopago.envelope import (
    KIND_PAYMENT,
    KIND_PREAPPROVAL,
    KIND_SUBSCRIPTION,
    KIND_UNKNOWN,
    parse_webhook_envelope,
)


class TestEnvelopeShapes:

    def test_webhook_payment_shape(self):
        envelope = parse_webhook_envelope({
            "id": 987,
            "type": "payment",
            "action": "payment.updated",
            "data": {"id": "123"},
        })
        assert envelope.kind == KIND_PAYMENT
        assert envelope.object_id == "123"
        assert envelope.notification_id == "987"
        assert envelope.status is None
        assert envelope.needs_enrichment

    def test_action_only_shape(self):
        envelope = parse_webhook_envelope({
            "action": "preapproval.updated",
            "data": {"id": "pre-1", "status": "authorized"},
        })
        assert envelope.kind == KIND_PREAPPROVAL
        assert envelope.status == "authorized"
        assert not envelope.needs_enrichment

    def test_subscription_preapproval_topic_is_preapproval(self):
        envelope = parse_webhook_envelope({"type": "subscription_preapproval", "data": {"id": "p-9"}})
        assert envelope.kind == KIND_PREAPPROVAL

    def test_subscription_topic(self):
        envelope = parse_webhook_envelope({"type": "subscription", "data": {"id": "s-1", "status": "cancelled"}})
        assert envelope.kind == KIND_SUBSCRIPTION
        assert envelope.status == "cancelled"

    def test_legacy_ipn_query_params(self):
        envelope = parse_webhook_envelope({}, {"topic": "payment", "id": "555"})
        assert envelope.kind == KIND_PAYMENT
        assert envelope.object_id == "555"
        assert envelope.notification_id is None

    def test_unknown_type(self):
        envelope = parse_webhook_envelope({"type": "merchant_order", "data": {"id": "1"}})
        assert envelope.kind == KIND_UNKNOWN

    def test_garbage_never_raises(self):
        envelope = parse_webhook_envelope(None)
        assert envelope.kind == KIND_UNKNOWN
        assert envelope.object_id is None

        envelope = parse_webhook_envelope({"data": "not-a-dict"})
        assert envelope.kind == KIND_UNKNOWN


class TestEnrichmentAndKey:

    def test_with_details_fills_status_and_references(self):
        envelope = parse_webhook_envelope({"type": "payment", "data": {"id": "123"}})
        enriched = envelope.with_details({
            "status": "approved",
            "external_reference": "tx-1",
            "preference_id": "pref-1",
            "payer": {"email": "payer@example.com"},
        })
        assert enriched.status == "approved"
        assert enriched.external_reference == "tx-1"
        assert enriched.preference_id == "pref-1"
        assert enriched.payer_email == "payer@example.com"
        assert envelope.status is None

    def test_event_key_changes_with_status(self):
        envelope = parse_webhook_envelope({"type": "payment", "data": {"id": "123", "status": "pending"}})
        approved = envelope.with_details({"status": "approved"})
        assert envelope.event_key == "payment:123:pending"
        assert approved.event_key == "payment:123:approved"

    def test_payload_hash_is_stable(self):
        body = {"type": "payment", "data": {"id": "123"}}
        assert parse_webhook_envelope(body).payload_hash == parse_webhook_envelope(dict(body)).payload_hash
