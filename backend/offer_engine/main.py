"""
FastAPI application entry point.

WHAT: Wire storage, notification delivery, error handlers and routes for the offer engine
WHY: One process serves offer creation, negotiation, bulk-accept and order spawning
HOW: Lifespan creates tables and the notification sink; handlers and the v1 router are registered on the app
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .core.config import settings
from .core.database import init_db, close_db
from .services.notifications import get_notification_sink, close_notification_sink
from .utils.logger import setup_logging, get_logger
from .middleware.error_handler import register_exception_handlers
from .api.v1.router import api_router

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    WHAT: Startup and shutdown logic
    WHY: Tables must exist before the first offer; the webhook client must be released on exit
    HOW: Async context manager for FastAPI lifespan
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()

    sink = get_notification_sink()
    if sink is None:
        logger.info("Notifications disabled")
    logger.info(
        f"Offer rules: max_items={settings.MAX_ITEMS_PER_OFFER}, "
        f"max_expiry_days={settings.MAX_OFFER_EXPIRY_DAYS}, reopen_days={settings.REOPEN_WINDOW_DAYS}, "
        f"payment_due_days={settings.PAYMENT_DUE_DAYS}"
    )

    yield

    logger.info("Shutting down application")
    close_notification_sink()
    close_db()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Catalog offer negotiation: create, counter, accept, reject, bulk-accept and spawn orders",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

register_exception_handlers(app)
app.include_router(api_router)


@app.get("/")
async def root():
    """Service banner with pointers to health and docs."""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "health": "/api/v1/health",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "offer_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
