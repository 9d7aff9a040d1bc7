"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager — startup/shutdown of tables, cache, job queue,
     notification handlers, and the expiry sweeper
  2. CORS middleware — allows frontend origins to make cross-origin requests
  3. Exception handlers — maps domain errors to HTTP responses
  4. Router registration — mounts all API endpoint groups

Running locally:
    uvicorn savings.main:app --reload

The --reload flag watches for file changes and restarts automatically,
which is ideal for development but should not be used in production.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from savings.cache import create_cache
from savings.config import settings
from savings.database import AsyncSessionLocal, Base, engine
from savings.exceptions import register_exception_handlers
from savings.logging import configure_logging, get_logger
from savings.routers import admin, auth, savings, security
from savings.services.device_service import DeviceTrustPolicy
from savings.services.notification_service import NotificationService
from savings.services.queue_service import JobQueue
from savings.services.sweeper_service import ExpirySweeper

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
      Creates all database tables if they don't exist (in production you'd
      use migrations), then builds the services that live for the whole
      process and puts them on app.state for the dependencies in
      savings/dependencies.py.

    Shutdown:
      Stops the sweeper, drains due jobs, closes the cache, and disposes of
      the database engine.
    """
    # --- Startup ---
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    cache = create_cache(settings.REDIS_URL)
    queue = JobQueue(max_attempts=settings.QUEUE_MAX_ATTEMPTS)
    NotificationService(queue, AsyncSessionLocal).register()
    sweeper = ExpirySweeper(AsyncSessionLocal, settings.SWEEP_INTERVAL_SECONDS)

    app.state.cache = cache
    app.state.queue = queue
    app.state.device_policy = DeviceTrustPolicy.from_settings()
    app.state.sweeper = sweeper

    if settings.RUN_BACKGROUND_TASKS:
        sweeper.start()
    logger.info("app_started", version=settings.APP_VERSION)

    yield

    # --- Shutdown ---
    await sweeper.stop()
    await queue.close()
    await cache.close()
    await engine.dispose()
    logger.info("app_stopped")


# Create the FastAPI application instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Savings account API with device-bound sessions, one-time codes, and a PIN-gated ledger",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

# CORS: Allow specified frontend origins to make requests.
# In production, lock this down to your actual frontend domain(s).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth.router, prefix="/auth", tags=["Auth"])
app.include_router(security.router, prefix="/security", tags=["Security"])
app.include_router(savings.router, prefix="/savings", tags=["Savings"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """
    Health check endpoint for deployment probes.

    Reports whether the cache answers; the service itself is up if this
    responds at all.
    """
    cache = getattr(request.app.state, "cache", None)
    cache_ok = await cache.ping() if cache is not None else False
    return {"status": "ok", "version": settings.APP_VERSION, "cache": cache_ok}
