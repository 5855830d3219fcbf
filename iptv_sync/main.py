from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from iptv_sync.config import setup_logging
from iptv_sync.database import close_db, init_db
from iptv_sync.dependencies import get_playlist_service, sync_scheduler
from iptv_sync.errors import (
    ChannelNotFoundError,
    FetchError,
    IngestError,
    InvalidRequestError,
    ParseError,
    PlaylistConflictError,
    PlaylistNotFoundError,
)
from iptv_sync.schemas import ErrorDetail, StandardErrorResponse
from iptv_sync.utils.timezone import utc_now

from iptv_sync.routers import main_router


setup_logging()
logger = logging.getLogger(__name__)

# Checked in order, first match wins
ERROR_STATUS = (
    (PlaylistNotFoundError, 404, "PLAYLIST_NOT_FOUND"),
    (ChannelNotFoundError, 404, "CHANNEL_NOT_FOUND"),
    (PlaylistConflictError, 409, "PLAYLIST_EXISTS"),
    (InvalidRequestError, 400, "INVALID_REQUEST"),
    (ParseError, 422, "PARSE_FAILED"),
    (FetchError, 502, "FETCH_FAILED"),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting IPTV Sync Service...")

    try:
        await init_db()

        # Flags left by a process that died mid-sync
        reset = await get_playlist_service().store.reset_refreshing_flags()
        if reset:
            logger.warning(f"Cleared stale refreshing flag on {reset} playlist(s)")

        sync_scheduler.start()
        logger.info("IPTV Sync Service started successfully")
    except Exception as e:
        logger.error(f"Failed to start IPTV Sync Service: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down IPTV Sync Service...")

    try:
        sync_scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    await close_db()
    logger.info("IPTV Sync Service stopped")


app = FastAPI(
    title="IPTV Sync Service",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(main_router)


def error_response(exc: IngestError) -> JSONResponse:
    status_code, code = 500, "INGEST_FAILED"
    for error_type, mapped_status, mapped_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break

    context = None
    if isinstance(exc, FetchError):
        context = {"reason": exc.reason}

    body = StandardErrorResponse(
        timestamp=utc_now().isoformat(),
        error=ErrorDetail(code=code, message=str(exc), context=context),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(IngestError)
async def ingest_exception_handler(request: Request, exc: IngestError):
    """Map engine failures to HTTP status codes"""
    logger.error(f"{type(exc).__name__} for {request.method} {request.url.path}: {exc}")
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error(f"Validation error for {request.method} {request.url.path}")
    logger.error(f"Validation details: {exc.errors()}")

    errors = []
    for error in exc.errors():
        error_dict = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100]
        }
        errors.append(error_dict)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors
        }
    )
