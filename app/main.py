"""
PM Billing Sync API - Main Application

SECURITY FEATURES:
- Conditional API docs (disabled in production)
- Structured logging without credentials or access tokens
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
import logging

from app.api.v2.router import api_router
from app.config import settings
from app.database import init_db
from app.exceptions import QBOSyncError, qbo_sync_exception_handler, validation_exception_handler
# Import all models to register them with SQLAlchemy metadata before init_db()
from app.models import CustomerCompany, Location, Invoice, InvoiceLine  # noqa: F401

# Configure secure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting PM Billing Sync API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"QBO sandbox: {settings.QBO_SANDBOX}, realm configured: {bool(settings.QBO_REALM_ID)}")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        # SECURITY: Don't log full exception details which may contain credentials
        logger.error(f"Database initialization failed: {type(e).__name__}")
        logger.warning("App starting without database - sync endpoints will fail")
    yield
    # Shutdown
    logger.info("Shutting down PM Billing Sync API...")


docs_url = None if settings.is_production else "/docs"

app = FastAPI(
    title="PM Billing Sync API",
    description="Syncs companies, locations and invoices with QuickBooks Online",
    version="1.0.0",
    docs_url=docs_url,
    redoc_url=None,
    lifespan=lifespan,
)

app.add_exception_handler(QBOSyncError, qbo_sync_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

# Include routers
app.include_router(api_router, prefix="/api/v2")


@app.get("/")
async def root():
    """Root endpoint - API info."""
    response = {
        "name": "PM Billing Sync API",
        "version": "1.0.0",
        "health": "/health",
    }
    if docs_url:
        response["docs"] = docs_url
    return response


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
