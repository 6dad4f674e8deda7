"""
SalesDrive Order Sync - Main Application
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .dependencies import init_dependencies, close_dependencies, get_sync_service
from .routes import sync_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting SalesDrive Order Sync...")
    await init_dependencies()
    logger.info("Application ready")
    yield
    logger.info("Shutting down...")
    await close_dependencies()


# Create app
app = FastAPI(
    title="SalesDrive Order Sync",
    description="Keep the local order database in step with SalesDrive",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(sync_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    service = get_sync_service()
    return {
        "status": "ok",
        "salesdrive_configured": service.client.is_configured,
        "salesdrive_reachable": await service.client.check_connection(),
        "sync_running": service.is_running,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backoffice.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
