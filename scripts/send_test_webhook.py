"""
Send a signed test webhook to a running payhook instance.

Signs the body the way Stripe does (t=<timestamp>,v1=<hmac-sha256>) with the
configured webhook secret, so the full ingress -> queue -> worker path can be
exercised without the Stripe CLI.

Usage:
    python -m scripts.send_test_webhook                                  # payout.paid to /webhooks/connect
    python -m scripts.send_test_webhook --type product.updated --endpoint /webhooks
    python -m scripts.send_test_webhook --id evt_fixed_1 --twice         # redelivery check
"""
import argparse
import hashlib
import hmac
import json
import logging
import time
import uuid

import httpx

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

SAMPLE_OBJECTS = {
    "payout.paid": {
        "id": "po_test_123", "object": "payout", "amount": 12500,
        "currency": "usd", "status": "paid", "arrival_date": None,
    },
    "payment_intent.succeeded": {
        "id": "pi_test_123", "object": "payment_intent", "amount": 5000,
        "amount_received": 5000, "currency": "usd", "status": "succeeded",
        "receipt_email": "payer@example.com", "metadata": {},
    },
    "product.updated": {
        "id": "prod_test_123", "object": "product", "name": "Pro",
        "active": True, "metadata": {"users_limit": "10"},
    },
}


def sign(payload: str, secret: str, timestamp: int) -> str:
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, event_id: str, account: str = None) -> dict:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "api_version": "2024-06-20",
        "data": {"object": SAMPLE_OBJECTS.get(event_type, {"id": f"obj_{uuid.uuid4().hex[:12]}"})},
    }
    if account:
        event["account"] = account
    return event


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--endpoint", default="/webhooks/connect")
    parser.add_argument("--type", default="payout.paid")
    parser.add_argument("--id", default=None, help="Stripe event id (random if omitted)")
    parser.add_argument("--account", default="acct_test_123")
    parser.add_argument("--secret", default=None, help="Defaults to the configured secret for the endpoint")
    parser.add_argument("--twice", action="store_true", help="Deliver the same event twice")
    args = parser.parse_args()

    secret = args.secret
    if secret is None:
        from payhook.config import get_settings
        settings = get_settings()
        secret = (
            settings.stripe_connect_webhook_secret
            if "connect" in args.endpoint
            else settings.stripe_webhook_secret
        )

    event = build_event(args.type, args.id or f"evt_test_{uuid.uuid4().hex[:16]}", args.account)
    payload = json.dumps(event)

    deliveries = 2 if args.twice else 1
    with httpx.Client(base_url=args.base_url, timeout=10.0) as client:
        for attempt in range(1, deliveries + 1):
            response = client.post(
                args.endpoint,
                content=payload,
                headers={
                    "Content-Type": "application/json",
                    "Stripe-Signature": sign(payload, secret, int(time.time())),
                },
            )
            logger.info(
                "Delivery %d of %s (%s): %d %s",
                attempt, event["id"], args.type, response.status_code, response.text,
            )


if __name__ == "__main__":
    main()
