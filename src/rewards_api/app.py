from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from rewards_api.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services import build_container
from .services.transport import ChatTransport, InMemoryTransport
from .services.transport.telegram import TelegramTransport
from .store import build_store
from .workers import ExpiryNotifierWorker


APP_VERSION = "0.1.0"


def _build_transport() -> ChatTransport:
    if not settings.telegram_bot_token:
        return InMemoryTransport()
    return TelegramTransport.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = build_store(settings)
    transport = _build_transport()
    polling = isinstance(transport, TelegramTransport)
    services = build_container(store, transport, settings)
    services.dispatcher.attach()

    expiry_notifier = ExpiryNotifierWorker(
        services.allocator,
        services.catalog,
        transport,
        interval_seconds=settings.expiry_notifier_interval_seconds,
        window_hours=settings.expiry_notifier_window_hours,
    )

    app.state.services = services
    app.state.expiry_notifier = expiry_notifier
    app.state.transport_started = None

    recovered = await services.broadcasts.recover_orphaned_jobs()
    active_sessions = await services.support.rebuild_cache()
    logger.info(
        "Rewards state rebuilt from store",
        recovered_broadcasts=recovered,
        active_support_sessions=active_sessions,
        store_backend=settings.store_backend,
    )

    if polling:
        await transport.start()
        app.state.transport_started = True
        logger.info("Chat transport polling started")
    else:
        logger.info(
            "Chat transport disabled",
            reason="telegram_bot_token is empty; using in-memory transport",
        )

    notifier_enabled = settings.expiry_notifier_enabled
    if notifier_enabled:
        expiry_notifier.start()
        logger.info(
            "Expiry notifier enabled",
            interval_seconds=expiry_notifier.interval_seconds,
            window_hours=settings.expiry_notifier_window_hours,
        )
    else:
        logger.info(
            "Expiry notifier disabled",
            reason="expiry_notifier_enabled is false",
        )

    try:
        yield
    finally:
        if notifier_enabled and expiry_notifier.is_running:
            await expiry_notifier.stop()
        await services.broadcasts.shutdown()
        if polling:
            await transport.stop()
        await store.close()


def create_app() -> FastAPI:
    """Application factory for the rewards admin API and bot runtime."""
    configure_logging(
        service_name="rewards-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name="rewards-api",
            service_version=APP_VERSION,
            environment=settings.environment,
            exporter_endpoint=settings.otel_exporter_otlp_endpoint,
            exporter_headers=settings.otel_exporter_otlp_headers,
        )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
