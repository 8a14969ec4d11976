"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the import routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports, jobs
from .core.config import settings
from .core.logging_config import configure_logging
from .db.models import ensure_tables
from .db.session import get_engine

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the pipeline tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        ensure_tables(get_engine())
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    yield


app = FastAPI(
    title="Baseoff Import API",
    version="1.0.0",
    description="Chunked, resumable import of client and contract spreadsheets",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)
app.include_router(jobs.router)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "baseoff-import-api",
    }
