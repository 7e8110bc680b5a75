"""
Shipdesk
FastAPI application entry point

- Shipping settings and box presets
- Order shipments, rate quotes and Easyship label purchase
- One-time tracking email per shipment
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from sqlalchemy import text

from shipdesk import __version__
from shipdesk.api.routes import debug, shipments, shipping_settings
from shipdesk.core.config import settings
from shipdesk.core.database import engine
from shipdesk.core.error_handler import register_exception_handlers
from shipdesk.migrations.shipping_labels import migrate_shipping_label_tables

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create or upgrade the shipping label tables on startup."""
    await migrate_shipping_label_tables(engine)
    if settings.EASYSHIP_MOCK:
        logger.warning("EASYSHIP_MOCK is on: rates and labels are synthetic")

    yield

    await engine.dispose()
    logger.info("Database engine disposed")


app = FastAPI(
    lifespan=lifespan,
    title=f"{settings.APP_NAME} API",
    description="Shipping labels for order fulfillment via Easyship",
    version=__version__,
)

register_exception_handlers(app)

# Include routers
app.include_router(shipping_settings.router, prefix="/api/admin", tags=["Shipping Settings"])
app.include_router(shipments.router, prefix="/api/admin", tags=["Shipments"])
app.include_router(debug.router, prefix="/api/admin", tags=["Debug"])


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with a DB ping. Returns 503 if the database is unreachable."""
    from fastapi.responses import JSONResponse

    health_status = {
        "status": "healthy",
        "database": "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check DB ping failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["database"] = "unreachable"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
