"""
TrialGuard API - FastAPI Application
====================================
HTTP surface for the clinical data quality workflow.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.routes import domain_data, signals, tasks, notifications
from app.services.workflow import get_workflow_service
from trialguard.database.connection import get_db_manager
from trialguard.workflow.runner import reset_workflow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    )
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    if settings.AUTO_CREATE_TABLES:
        get_db_manager().create_tables()
    yield
    # Shutdown
    reset_workflow()
    logger.info(f"Shutting down {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Clinical trial data quality and signal detection API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(domain_data.router, prefix="/api/v1/domain-data", tags=["Domain Data"])
app.include_router(signals.router, prefix="/api/v1/signals", tags=["Signals"])
app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["Tasks"])
app.include_router(notifications.router, prefix="/api/v1/notifications", tags=["Notifications"])


@app.get("/", tags=["Root"])
async def root():
    """API root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
@app.get("/api/v1/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    try:
        db_ok = get_workflow_service().db.health_check()
        return {
            "status": "healthy" if db_ok else "degraded",
            "api": "running",
            "database": "connected" if db_ok else "unavailable",
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "api": "running",
            "database": {"error": str(e)},
        }
