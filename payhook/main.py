"""
payhook - Stripe webhook ingestion and domain event fan-out for a multi-tenant
billing backend. Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from payhook.config import check_required_config, get_settings
from payhook.api.router import api_router
from payhook.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("payhook")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("payhook starting up (env=%s)", settings.app_env)

    # Refuse traffic we could not verify
    check_required_config(settings)

    if not settings.stripe_secret_key:
        logger.warning(
            "STRIPE_SECRET_KEY not set - webhooks are accepted, but price sync "
            "and usage metering are disabled."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    from payhook.container import build_container
    from payhook.database import dispose_engine
    from payhook.utils.redis import close_redis

    app.state.container = build_container(settings)

    yield

    logger.info("payhook shutting down...")
    await app.state.container.close()
    await close_redis()
    await dispose_engine()
    logger.info("payhook shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level, service="api")

    application = FastAPI(
        title="payhook",
        description="Stripe webhook ingestion and domain events for SaaS billing",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS - allow dashboard origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    # Include all routes
    application.include_router(api_router)

    return application


app = create_app()
