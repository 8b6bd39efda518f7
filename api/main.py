"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, locks, stats
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import ETLScheduler

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Batchsync ETL API",
    description="Read-only view of ingestion runs, checkpoints and write locks",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = ETLScheduler()


app.include_router(health.router)
app.include_router(locks.router)
app.include_router(stats.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Batchsync ETL API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Batchsync ETL API")
    if scheduler.scheduler.running:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Batchsync ETL API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "locks": "/locks",
            "stats": "/stats"
        }
    }
