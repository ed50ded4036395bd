from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newsletter.config import settings
from newsletter.database import engine, init_db
from newsletter.obs.errors import register_error_handlers
from newsletter.obs.logging import get_logger, setup_logging
from newsletter.obs.middleware import ObservabilityMiddleware
from newsletter.obs.sentry import setup_sentry
from newsletter.obs.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from newsletter.routes import health, metrics, newsletters, subscriptions
from newsletter.services.delivery_worker import DeliveryWorker
from newsletter.services.idempotency_sweeper import ExpirySweeper

# Initialize observability
setup_logging()
setup_tracing()
setup_sentry()
instrument_sqlalchemy(engine)

logger = get_logger(__name__)

app = FastAPI(title="Newsletter API")

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# Register error handlers
register_error_handlers(app)

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Observability middleware (must be early in the stack)
app.add_middleware(ObservabilityMiddleware)

app.include_router(health.router)  # Health checks first
app.include_router(metrics.router)  # Prometheus metrics
app.include_router(newsletters.router)
app.include_router(subscriptions.router)


@app.on_event("startup")
async def startup_event():
    init_db()

    app.state.expiry_sweeper = None
    app.state.delivery_worker = None

    if not settings.ENABLE_BACKGROUND_WORKERS:
        logger.info("Background workers disabled")
        return
    if settings.ENABLE_CELERY:
        logger.info("Background work delegated to Celery beat")
        return

    app.state.expiry_sweeper = ExpirySweeper()
    await app.state.expiry_sweeper.start()
    logger.info("Started idempotency sweeper")

    app.state.delivery_worker = DeliveryWorker()
    await app.state.delivery_worker.start()
    logger.info("Started delivery worker")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown."""
    sweeper = getattr(app.state, "expiry_sweeper", None)
    if sweeper is not None:
        await sweeper.stop()

    worker = getattr(app.state, "delivery_worker", None)
    if worker is not None:
        await worker.stop()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
