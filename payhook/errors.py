"""
Error taxonomy for the webhook pipeline.

- MissingSignature / InvalidSignature: rejected per request with HTTP 400, never retried.
- ConfigurationError: fatal at startup, the process must not serve traffic.
- DuplicateEvent: not a failure, the idempotent no-op path.
- UnroutableEventType: logged at info level and treated as success.
- HandlerFailure: transient by default, retried by the job queue.
"""
from typing import Optional


class PayhookError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(PayhookError):
    """Required configuration is missing or invalid."""
    pass


class MissingSignature(PayhookError):
    """The signature header was not sent."""
    pass


class InvalidSignature(PayhookError):
    """The signature did not match the raw body, or could not be checked."""
    pass


class MissingWebhookSecret(InvalidSignature, ConfigurationError):
    """No shared secret is configured for the endpoint."""
    pass


class DuplicateEvent(PayhookError):
    """A webhook with this Stripe event id is already stored."""

    def __init__(self, stripe_event_id: str):
        super().__init__(f"Duplicate webhook event: {stripe_event_id}")
        self.stripe_event_id = stripe_event_id


class UnroutableEventType(PayhookError):
    """No handler exists for this Stripe event type."""

    def __init__(self, event_type: str):
        super().__init__(f"No handler for event type: {event_type}")
        self.event_type = event_type


class HandlerFailure(PayhookError):
    """A domain handler raised while processing a webhook event."""

    def __init__(self, event_type: str, stripe_event_id: Optional[str], cause: BaseException):
        super().__init__(f"{event_type} handler failed for {stripe_event_id}: {cause}")
        self.event_type = event_type
        self.stripe_event_id = stripe_event_id
        self.cause = cause


class EventBusClosed(PayhookError):
    """Publish was attempted after the event bus was torn down."""
    pass


class IdentityProviderError(PayhookError):
    """The auth service could not be reached or answered with an error."""
    pass
