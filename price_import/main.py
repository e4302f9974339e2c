"""
FastAPI application entry point.

This module configures logging, creates the database tables on startup and
registers the API routers.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .core.config import settings
from .core.logging_config import configure_logging
from .api.routers import imports, mapping

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the import tables unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    from .db.models import create_import_tables

    try:
        create_import_tables()
        logger.info("Import tables ready")
    except Exception:
        logger.exception("Failed to initialize database tables")
        raise

    yield


app = FastAPI(
    title="Price Import API",
    version="1.0.0",
    description="Imports product, regional price and competitor price files",
    lifespan=lifespan,
)

app.include_router(imports.router)
app.include_router(mapping.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Price Import API",
        "version": "1.0.0",
    }
