"""
Stripe webhook endpoints - platform events and Connect (connected account) events.

No session auth: every request is authenticated by its Stripe signature.
The body is read raw because the signature covers the exact bytes sent.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from payhook.api.dependencies import get_container
from payhook.container import Container

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _receive(request: Request, container: Container, source: str) -> JSONResponse:
    payload = await request.body()
    result = await container.ingress.receive(
        payload,
        request.headers.get("stripe-signature"),
        source=source,
        headers=dict(request.headers),
        url=str(request.url),
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/webhooks")
@router.post("/api/v1/stripe/webhooks", include_in_schema=False)
async def stripe_webhook(request: Request, container: Container = Depends(get_container)):
    """Platform account events (catalog, subscriptions, invoices)."""
    return await _receive(request, container, "stripe")


@router.post("/webhooks/connect")
@router.post("/api/v1/stripe/connect/webhooks", include_in_schema=False)
async def stripe_connect_webhook(request: Request, container: Container = Depends(get_container)):
    """Connected account events (onboarding, payments, payouts)."""
    return await _receive(request, container, "connect")
