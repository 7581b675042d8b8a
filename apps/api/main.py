"""
Toonify Billing API - FastAPI Backend
Main application entry point: credit ledger, subscription status and RevenueCat webhooks.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    credits,
    generation,
    payments,
    subscription,
)
from services.errors import BillingError, InsufficientCreditError

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting Toonify Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    # Shutdown
    await engine.dispose()
    logger.info("Shutting down API...")


app = FastAPI(
    title="Toonify Billing API",
    description="Credits, subscriptions and RevenueCat webhook reconciliation for Toonify",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Map billing errors onto HTTP responses."""
    if exc.status_code >= 500:
        logger.error("Billing error on %s %s: %s", request.method, request.url.path, exc)
    else:
        logger.warning("Billing error on %s %s: %s", request.method, request.url.path, exc)

    content = {"detail": str(exc)}
    if isinstance(exc, InsufficientCreditError):
        content.update({"required": exc.required, "available": exc.available})
    return JSONResponse(status_code=exc.status_code, content=content)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(subscription.router, prefix="/subscription", tags=["Subscription"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(generation.router, prefix="/generation", tags=["Generation"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Toonify Billing API",
        "version": "0.1.0",
        "status": "running"
    }
