"""
Process-wide wiring. The API lifespan and the worker entry point each build
one Container from settings; everything else receives its collaborators from
here instead of reaching for module-level singletons.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from payhook.config import Settings
from payhook.handlers.common import HandlerContext
from payhook.listeners.registry import register_listeners
from payhook.services.event_bus import EventBus
from payhook.services.event_router import EventRouter
from payhook.services.identity import HttpIdentityProvider
from payhook.services.ingress import WebhookIngress
from payhook.services.job_queue import JobQueue
from payhook.services.stripe_client import StripeGateway
from payhook.services.usage import UsageMeter
from payhook.services.webhook_store import WebhookStore
from payhook.utils.webhook_signatures import WebhookVerifier

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    session_factory: object
    store: WebhookStore
    queue: JobQueue
    bus: EventBus
    router: EventRouter
    ingress: WebhookIngress
    identity: HttpIdentityProvider
    gateway: Optional[StripeGateway] = None
    usage_meter: Optional[UsageMeter] = None

    async def close(self) -> None:
        await self.bus.close()


def build_container(settings: Settings, session_factory=None) -> Container:
    if session_factory is None:
        from payhook.database import get_session_factory
        session_factory = get_session_factory()

    store = WebhookStore(session_factory)
    queue = JobQueue.from_settings(session_factory, settings)
    bus = EventBus(session_factory, queue=queue, environment=settings.app_env)

    gateway = StripeGateway() if settings.stripe_secret_key else None
    if gateway is None:
        logger.warning("STRIPE_SECRET_KEY not set - price sync and usage metering disabled")
    usage_meter = UsageMeter(session_factory, gateway) if gateway is not None else None

    identity = HttpIdentityProvider(
        settings.auth_base_url,
        service_token=settings.auth_service_token,
        timeout=settings.auth_timeout_seconds,
    )

    verifiers = {
        "stripe": WebhookVerifier(
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
            name="stripe",
        ),
        "connect": WebhookVerifier(
            settings.stripe_connect_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
            name="connect",
        ),
    }

    register_listeners(bus, identity=identity, usage_meter=usage_meter, settings=settings)

    return Container(
        settings=settings,
        session_factory=session_factory,
        store=store,
        queue=queue,
        bus=bus,
        router=EventRouter(HandlerContext(session_factory, bus, gateway)),
        ingress=WebhookIngress(store, queue, verifiers),
        identity=identity,
        gateway=gateway,
        usage_meter=usage_meter,
    )
