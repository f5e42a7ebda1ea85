import asyncio
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables early
load_dotenv()

from crm_sync.api.dependencies import get_registry
from crm_sync.api.router import router as api_router
from crm_sync.api.sync_router import router as sync_router
from crm_sync.api.webhook_router import router as webhook_router
from crm_sync.sync.errors import ProviderError, SyncError
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.sync.token_manager import IntegrationManager
from crm_sync.sync.watches import WatchManager
from crm_sync.utils.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

# Set up logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="CRM Sync Service",
    description="Two-way calendar and email synchronization for the CRM",
    version="1.0.0",
    debug=settings.DEBUG
)


# Exception handlers for application errors
@app.exception_handler(SyncError)
async def sync_exception_handler(request: Request, exc: SyncError):
    if isinstance(exc, ProviderError) or exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(api_router, prefix=settings.API_PREFIX)
app.include_router(sync_router, prefix=settings.API_PREFIX)
app.include_router(webhook_router, prefix=settings.API_PREFIX)

# Background task for watch renewal
renewal_task = None


async def renew_watches_once() -> None:
    storage = SyncStorageManager()
    await storage.initialize()
    try:
        registry = get_registry()
        watches = WatchManager(storage, IntegrationManager(storage, registry), registry)
        await watches.renew_expiring()
    finally:
        await storage.close()


async def periodic_watch_renewal(interval_minutes: int):
    """Renew expiring push-notification watches"""
    logger.info(f"Starting watch renewal with {interval_minutes} minute interval")
    while True:
        try:
            await asyncio.sleep(interval_minutes * 60)
            await renew_watches_once()
        except asyncio.CancelledError:
            logger.info("Watch renewal task cancelled, exiting cleanly")
            break
        except Exception as e:
            logger.error(f"Error in watch renewal: {e}")
            # Avoid a tight loop on repeated errors
            await asyncio.sleep(60)


@app.on_event("startup")
async def startup_event():
    global renewal_task
    if not settings.JWT_SECRET_KEY:
        logger.warning("JWT_SECRET_KEY is not set, session and OAuth state tokens will be rejected")

    interval = settings.WATCH_RENEWAL_INTERVAL_MINUTES
    if interval > 0:
        renewal_task = asyncio.create_task(periodic_watch_renewal(interval))
        logger.info(f"Watch renewal scheduled every {interval} minutes")


@app.on_event("shutdown")
async def shutdown_event():
    global renewal_task
    if renewal_task:
        renewal_task.cancel()
        try:
            await renewal_task
        except asyncio.CancelledError:
            pass
        renewal_task = None


# Route for health check
@app.get("/health")
async def health_check():
    return {"status": "ok"}
