#!/usr/bin/env python3
"""
Script to send signed Mercado Pago notifications to a local server.

Usage:
    # Start your server first
    uvicorn main:app --reload

    # Then run this script
    python scripts/send_test_webhook.py --event payment_approved --payment-id 123456
    python scripts/send_test_webhook.py --event preapproval_authorized --payment-id pre-1
    python scripts/send_test_webhook.py --event invalid_signature
"""

import argparse
import hmac
import hashlib
import json
import os
import time
import uuid

import httpx

DEFAULT_SECRET = os.getenv("MERCADOPAGO_WEBHOOK_SECRET", "test_webhook_secret")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")
WEBHOOK_PATH = "/api/webhooks/mercadopago"


def generate_signature(data_id: str, request_id: str, secret: str) -> str:
    """Build an x-signature header the way Mercado Pago signs notifications."""
    ts = str(int(time.time() * 1000))
    signed_id = data_id.lower() if data_id.isalnum() else data_id
    manifest = f"id:{signed_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def send_webhook(payload: dict, data_id: str, base_url: str, secret: str, valid_signature: bool = True):
    """Send one notification and print the response."""
    url = f"{base_url}{WEBHOOK_PATH}"
    request_id = str(uuid.uuid4())
    signature = generate_signature(data_id, request_id, secret if valid_signature else "wrong-secret")

    headers = {
        "Content-Type": "application/json",
        "x-request-id": request_id,
        "x-signature": signature,
    }

    print(f"\n{'='*60}")
    print(f"Sending notification to {url}")
    print(f"Payload: {json.dumps(payload, indent=2)}")
    print(f"{'='*60}\n")

    try:
        response = httpx.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        return None
    print(f"Response Status: {response.status_code}")
    print(f"Response Body: {response.text}")
    return response


def payment_payload(payment_id: str, status: str, preference_id=None) -> dict:
    data = {"id": payment_id, "status": status}
    if preference_id:
        data["preference_id"] = preference_id
    return {"type": "payment", "action": "payment.updated", "id": int(time.time()), "data": data}


def preapproval_payload(preapproval_id: str, status: str, plan_id=None) -> dict:
    data = {"id": preapproval_id, "status": status}
    if plan_id:
        data["preapproval_plan_id"] = plan_id
    return {"type": "subscription_preapproval", "action": "updated", "data": data}


def main():
    parser = argparse.ArgumentParser(description="Send test Mercado Pago notifications")
    parser.add_argument(
        "--event",
        choices=["payment_approved", "payment_rejected", "preapproval_authorized", "invalid_signature"],
        default="payment_approved",
    )
    parser.add_argument("--payment-id", default="123456", help="Provider payment or preapproval id")
    parser.add_argument("--preference-id", default=None, help="Checkout preference / preapproval plan id")
    parser.add_argument("--secret", default=DEFAULT_SECRET, help="Webhook secret")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="Base URL of your server")
    args = parser.parse_args()

    if args.event == "preapproval_authorized":
        payload = preapproval_payload(args.payment_id, "authorized", args.preference_id)
    elif args.event == "payment_rejected":
        payload = payment_payload(args.payment_id, "rejected", args.preference_id)
    else:
        payload = payment_payload(args.payment_id, "approved", args.preference_id)

    response = send_webhook(
        payload,
        args.payment_id,
        args.base_url,
        args.secret,
        valid_signature=args.event != "invalid_signature",
    )
    if args.event == "invalid_signature" and response is not None:
        if response.status_code == 401:
            print("\nCorrectly rejected invalid signature")
        else:
            print("\nWARNING: invalid signature was NOT rejected")


if __name__ == "__main__":
    main()
