"""
Stripe webhook signature verification.

Stripe signs every delivery with HMAC-SHA256 over "<timestamp>.<raw body>" and sends
it as the stripe-signature header: "t=<timestamp>,v1=<hex digest>[,v1=...]".
Verification must run over the exact raw bytes, before anything parses the body.
"""
import hashlib
import json
import logging
from typing import Optional

from payhook.errors import InvalidSignature, MissingSignature, MissingWebhookSecret

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class WebhookVerifier:
    """Verifies deliveries for one endpoint secret."""

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS, name: str = "stripe"):
        self.secret = secret
        self.tolerance = tolerance
        self.name = name

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> dict:
        """
        Check the signature and return the parsed event.

        Raises:
            MissingSignature: header absent or empty
            MissingWebhookSecret: no secret configured for this endpoint
            InvalidSignature: mismatch, stale timestamp, malformed header or body
        """
        if not signature_header:
            raise MissingSignature("Missing stripe-signature header")
        if not self.secret:
            logger.error("Webhook secret not configured for %s endpoint - rejecting", self.name)
            raise MissingWebhookSecret(f"Webhook secret not configured for {self.name} endpoint")

        import stripe

        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignature("Webhook body is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.secret, self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(
                "Stripe signature verification failed (%s endpoint): %s sig=%s",
                self.name, str(e), signature_header[:20],
            )
            raise InvalidSignature(str(e)) from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise InvalidSignature("Signed body is not valid JSON") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignature("Signed body is not a Stripe event")

        return event


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for dedup and audit."""
    return hashlib.sha256(body).hexdigest()
