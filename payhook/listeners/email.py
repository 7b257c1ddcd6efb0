"""
Customer email listener. Queued on the "emails" topic, so a SendGrid outage
becomes a retried job instead of a lost notification.
"""
import logging

from payhook.models.domain_event import DomainEvent
from payhook.services import transactional_email

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


def _check(result: dict, to_email: str) -> bool:
    """True if sent. Raises on a delivery error worth retrying."""
    if result.get("status") == "sent":
        return True
    if result.get("error") == transactional_email.NOT_CONFIGURED:
        logger.warning("Email to %s skipped: SendGrid not configured", to_email[:20] + "***")
        return False
    raise EmailDeliveryError(result.get("error") or "unknown SendGrid error")


class EmailListener:
    def __init__(self, identity=None):
        """
        Args:
            identity: HttpIdentityProvider, used to find organization members
        """
        self._identity = identity

    async def on_payment_failed(self, event: DomainEvent) -> None:
        payload = event.payload or {}
        email = payload.get("customer_email")
        if not email:
            logger.info("payment.failed %s has no customer email", payload.get("payment_intent_id"))
            return
        result = await transactional_email.send_payment_failed(
            email,
            payload.get("amount"),
            payload.get("currency"),
            payload.get("failure_message"),
        )
        _check(result, email)

    async def on_invoice_payment_failed(self, event: DomainEvent) -> None:
        payload = event.payload or {}
        email = payload.get("customer_email")
        if not email:
            logger.info("Invoice %s has no customer email", payload.get("invoice_id"))
            return
        result = await transactional_email.send_invoice_payment_failed(
            email,
            payload.get("amount_due"),
            payload.get("currency"),
            payload.get("hosted_invoice_url"),
        )
        _check(result, email)

    async def on_onboarding_completed(self, event: DomainEvent) -> None:
        """Email every member of the organization that owns the account."""
        if not event.organization_id or self._identity is None:
            logger.info(
                "Onboarding completed for %s without organization, no email",
                (event.payload or {}).get("stripe_account_id"),
            )
            return

        members = await self._identity.list_members(event.organization_id)
        recipients = [m for m in members if m.email]
        failures = []
        sent = 0
        for member in recipients:
            result = await transactional_email.send_onboarding_completed(member.email, member.name)
            try:
                if _check(result, member.email):
                    sent += 1
            except EmailDeliveryError as e:
                failures.append(str(e))

        logger.info(
            "Onboarding emails for org %s: %d sent, %d failed",
            event.organization_id[:8], sent, len(failures),
            extra={"organization_id": event.organization_id},
        )
        # Retrying would re-send to members who already got it
        if failures and not sent:
            raise EmailDeliveryError(failures[0])
