"""
FastAPI application entry point for the billing core.

Serves the billing webhook endpoint and the entitlement read API. The sweep
scheduler normally runs in its own process (billing_core.jobs.billing_worker);
set RUN_SWEEPS_IN_PROCESS=true to run it inside the API process instead.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from billing_core.api.routes import entitlements, health, webhooks
from billing_core.config.settings import get_settings
from billing_core.errors import BillingCoreError, UnknownReferenceError

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    scheduler = None

    logger.info("Starting billing core API", extra={"providers": list(settings.enabled_providers)})

    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - all Stripe deliveries will be rejected")
    if not settings.jwt_secret:
        logger.warning("JWT_SECRET not set - entitlement endpoints will reject every token")

    if settings.run_sweeps_in_process:
        from billing_core.jobs.billing_worker import build_scheduler

        scheduler = build_scheduler(settings=settings)
        scheduler.start()

    yield

    if scheduler is not None:
        scheduler.stop(timeout=30)
    logger.info("Billing core API stopped")


app = FastAPI(
    title="Billing Core",
    description="Billing webhook inbox, transactional outbox and entitlement versioning",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(entitlements.router)


@app.exception_handler(UnknownReferenceError)
async def unknown_reference_handler(request: Request, exc: UnknownReferenceError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=exc.to_dict())


@app.exception_handler(BillingCoreError)
async def billing_error_handler(request: Request, exc: BillingCoreError):
    logger.warning(
        "Billing error",
        extra={"error": exc.message, "error_type": type(exc).__name__, "path": request.url.path},
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
