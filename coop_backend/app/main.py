"""
FastAPI Application Entry Point.

This is the main application file for the Cooperative Fee Payments Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from coop_backend.app.core.config import settings
from coop_backend.app.api.v1.router import router as api_v1_router
from coop_backend.app.db.session import engine, Base, AsyncSessionLocal
from coop_backend.app.core.observability import ObservabilityMiddleware, configure_logging
from coop_backend.app.core.redis_client import ping_redis, close_redis
from coop_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from coop_backend.app.services.momo_gateway import get_payment_gateway, close_payment_gateway
from coop_backend.app.services.reconciliation import ReconciliationWorker

# Import models to ensure they are registered with Base
from coop_backend.app.models.user import User
from coop_backend.app.models.audit_log import AuditLog
from coop_backend.app.models.fee_rule import FeeRule
from coop_backend.app.models.fee_application import FeeApplication
from coop_backend.app.models.payment_attempt import PaymentAttempt, PaymentAttemptFee
from coop_backend.app.models.dlq import DeadLetterQueue


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the payment reconciliation worker.
    3. Stops the worker and closes the gateway and redis clients on shutdown.
    """
    configure_logging(settings.log_level)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    worker = None
    if settings.reconciliation_enabled:
        worker = ReconciliationWorker(AsyncSessionLocal, get_payment_gateway)
        worker.start()
    app.state.reconciliation_worker = worker

    yield

    if worker is not None:
        await worker.stop()
    await close_payment_gateway()
    await close_redis()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Fee payments over MTN Mobile Money for cooperative members",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if redis_ok else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Cooperative Fee Payments API",
        "docs": "/docs",
        "health": "/health",
    }
