"""
Webhook worker process - `payhook-worker`.

Runs the worker pool over the webhook and listener topics plus the
reconciler. SIGINT/SIGTERM, unhandled loop exceptions and crashed consumers
all lead to the same graceful shutdown.
"""
import asyncio
import logging
import signal

from payhook.config import check_required_config, get_settings
from payhook.services.event_bus import EventType
from payhook.services.job_queue import LISTENER_TOPICS, WEBHOOK_TOPICS
from payhook.utils.logging import configure_structured_logging

logger = logging.getLogger("payhook.worker")


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
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


async def run_worker() -> None:
    from payhook.container import build_container
    from payhook.database import dispose_engine
    from payhook.utils.redis import close_redis
    from payhook.workers.pool import WorkerPool
    from payhook.workers.processors import ListenerJobProcessor, WebhookJobProcessor
    from payhook.workers.reconciler import Reconciler

    settings = get_settings()
    container = build_container(settings)
    shutdown = asyncio.Event()

    def request_shutdown(reason: str) -> None:
        if not shutdown.is_set():
            logger.info("Shutdown requested: %s", reason)
            shutdown.set()

    def on_crash(exc: BaseException) -> None:
        try:
            container.bus.emit(
                EventType.SYSTEM_ERROR,
                {
                    "message": f"Webhook worker consumer crashed: {exc}",
                    "severity": "critical",
                    "context": {"error_type": type(exc).__name__},
                },
            )
        except Exception as e:
            logger.error("Could not report worker crash: %s", str(e))
        request_shutdown(f"consumer crashed: {exc}")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig.name)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    def handle_loop_exception(loop, context) -> None:
        logger.error("Unhandled event loop exception: %s", context.get("message"))
        exc = context.get("exception")
        if exc is not None:
            on_crash(exc)
        else:
            request_shutdown(context.get("message", "loop exception"))

    loop.set_exception_handler(handle_loop_exception)

    webhook_processor = WebhookJobProcessor(container.store, container.router, container.bus)
    listener_processor = ListenerJobProcessor(container.bus)
    processors = {topic: webhook_processor for topic in WEBHOOK_TOPICS}
    processors.update({topic: listener_processor for topic in LISTENER_TOPICS})

    pool = WorkerPool(
        container.queue,
        processors,
        concurrency=settings.webhook_worker_concurrency,
        poll_interval=settings.worker_poll_interval_seconds,
        shutdown_timeout=settings.worker_shutdown_timeout,
        on_crash=on_crash,
    )
    reconciler = Reconciler(
        container.store,
        container.queue,
        interval_seconds=settings.reconcile_interval_seconds,
        grace_seconds=settings.reconcile_grace_seconds,
    )

    pool.start()
    reconciler_task = asyncio.create_task(reconciler.run())
    logger.info("Webhook worker running (id=%s)", pool.worker_id)

    try:
        await shutdown.wait()
    finally:
        logger.info("Webhook worker shutting down...")
        reconciler_task.cancel()
        await asyncio.gather(reconciler_task, return_exceptions=True)
        await pool.stop()
        await container.close()
        await close_redis()
        await dispose_engine()
        logger.info("Webhook worker shutdown complete")


def main() -> None:
    settings = get_settings()
    configure_structured_logging(settings.log_level, service="worker")
    check_required_config(settings)
    _init_sentry(settings)
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
