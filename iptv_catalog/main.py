from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from iptv_catalog.config import setup_logging
from iptv_catalog.errors import CatalogError
from iptv_catalog.routers import main_router
from iptv_catalog.services.scheduler_service import JobScheduler
from iptv_catalog.services.session_registry import SessionRegistry
from iptv_catalog.utils.logging_helpers import DEFAULT_SESSION_KEY


setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("=" * 60)
    logger.info("Starting IPTV Catalog Service...")
    logger.info("=" * 60)

    scheduler = JobScheduler()
    registry = SessionRegistry(scheduler)
    try:
        logger.info("Opening default session...")
        await registry.resolve(DEFAULT_SESSION_KEY)

        registry.start()
        scheduler.start()
        logger.info("Scheduler started successfully")
    except (CatalogError, ValueError) as e:
        logger.error("Failed to start IPTV Catalog Service: %s", e, exc_info=True)
        raise

    app.state.scheduler = scheduler
    app.state.registry = registry
    logger.info("IPTV Catalog Service started successfully")

    yield

    logger.info("Shutting down IPTV Catalog Service...")
    try:
        await registry.shutdown()
    except CatalogError as e:
        logger.error("Error during registry shutdown: %s", e, exc_info=True)
    scheduler.shutdown()
    logger.info("IPTV Catalog Service stopped")


app = FastAPI(
    title="IPTV Catalog Service",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(main_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error("Validation error for %s %s: %s", request.method, request.url.path, exc.errors())

    errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100],
        }
        for error in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": errors})


@app.exception_handler(CatalogError)
async def catalog_exception_handler(request: Request, exc: CatalogError):
    """Unhandled service errors become 503 with the error message"""
    logger.error("Catalog error for %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})
