import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.common.errors import AppError, app_error_handler, request_validation_handler
from app.config import settings
from app.esign.router import router as documents_router
from app.esign.router import signing_router
from app.middleware import CorrelationIDMiddleware, configure_logging
from app.webhooks.queue import delivery_queue
from app.webhooks.router import router as webhooks_router
from app.workers.reminders import process_reminders_and_expirations
from app.workers.scheduler import PeriodicWorker
from app.workers.webhook_retry import retry_failed_deliveries

logger = logging.getLogger(__name__)


def build_workers() -> list[PeriodicWorker]:
    return [
        PeriodicWorker("webhook-retry", settings.webhook_retry_interval_seconds, retry_failed_deliveries),
        PeriodicWorker("reminders", settings.reminder_interval_seconds, process_reminders_and_expirations),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    delivery_queue.start()
    workers = build_workers() if settings.workers_enabled else []
    for worker in workers:
        worker.start()
    logger.info("%s %s started (%s)", settings.app_name, settings.app_version, settings.environment)
    yield
    for worker in workers:
        await worker.stop()
    await delivery_queue.stop()
    logger.info("%s shut down", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.backend_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Errors
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

# Routers
app.include_router(documents_router, prefix="/api/documents", tags=["Documents"])
app.include_router(signing_router, prefix="/api/sign", tags=["Signing"])
app.include_router(webhooks_router, prefix="/api/webhooks", tags=["Webhooks"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "version": settings.app_version}
