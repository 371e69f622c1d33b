"""FastAPI application for the CRM bulk import service."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from crm_import.clients.postgres_client import PostgresClient
from crm_import.clients.supabase_client import SupabaseClient
from crm_import.logging import configure_logging

from .config import get_settings
from .routes.health import router as health_router
from .routes.imports import router as imports_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the store client at startup, close it at shutdown."""
    settings = get_settings()
    configure_logging(json_output=settings.LOG_JSON, log_level=settings.LOG_LEVEL)

    if settings.use_postgres:
        store = PostgresClient(settings.DATABASE_URL)
        await store.connect()
        logger.info("lifespan.startup", store="postgres")
    else:
        store = SupabaseClient(url=settings.SUPABASE_URL, key=settings.SUPABASE_KEY)
        await store.connect()
        logger.info("lifespan.startup", store="supabase", url=settings.SUPABASE_URL)

    if not await store.verify_connectivity():
        logger.warning("lifespan.store_connectivity_failed")

    # Store on app.state for request handlers
    app.state.store = store

    logger.info("lifespan.ready")
    yield

    # Shutdown
    logger.info("lifespan.shutdown")
    await store.close()


app = FastAPI(
    title="crm-import",
    description="Bulk spreadsheet importer for CRM companies, contacts, deals and notes",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(imports_router)
