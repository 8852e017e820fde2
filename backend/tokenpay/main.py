"""FastAPI application entry point"""
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tokenpay.core.config import settings
from tokenpay.core.logging import setup_logging
from tokenpay.db.session import init_db
from tokenpay.api import payments, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - webhook deliveries will be rejected")

    yield

    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Tokenpay Backend",
    description="Stripe payments, subscriptions and token wallets",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers
app.include_router(webhooks.router)
app.include_router(payments.router)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    reload = settings.ENVIRONMENT == "development"
    port = int(os.getenv("PORT", "8000"))
    if reload:
        uvicorn.run("tokenpay.main:app", host="0.0.0.0", port=port, reload=True)
    else:
        uvicorn.run(app, host="0.0.0.0", port=port)
