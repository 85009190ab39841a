"""
Main FastAPI application
Entry point for the settlement service API and in-process scheduler
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from contextlib import asynccontextmanager
import logging

from chartvolt.core.config import settings
from chartvolt.core.security import limiter, get_security_headers
from chartvolt.core.database import init_db, close_db
from chartvolt.core.redis import connect_redis, get_redis_client, close_redis
from chartvolt.core.exceptions import ConfigurationError
from chartvolt.services.scheduler import SettlementScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# LIFESPAN CONTEXT MANAGER
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting settlement service")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    session_factory = init_db(settings.DATABASE_URL)
    logger.info("Database engine initialized")

    # Redis is optional: without it prices are missing and effects are dropped
    await connect_redis(settings.REDIS_URL)

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        try:
            app.state.scheduler = SettlementScheduler(session_factory, get_redis_client())
            await app.state.scheduler.start()
        except ConfigurationError as e:
            logger.critical(f"Scheduler not started, invalid configuration: {e}")
            raise

    logger.info("Application startup complete")

    yield  # Application runs here

    # ==================== SHUTDOWN ====================
    logger.info("Shutting down settlement service")

    if app.state.scheduler:
        await app.state.scheduler.stop()

    await close_redis()

    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")

# ============================================================================
# CREATE FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Chartvolt Settlement API",
    description="Competition and challenge settlement with margin liquidation",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter

# ============================================================================
# MIDDLEWARE
# ============================================================================

@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for key, value in get_security_headers().items():
        response.headers[key] = value
    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please try again later.",
            "limit": str(exc.detail)
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error": str(exc),
                "type": type(exc).__name__
            }
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

# ============================================================================
# ROOT ENDPOINTS
# ============================================================================

def _scheduler(request: Request):
    return getattr(request.app.state, "scheduler", None)


@app.get("/")
async def root(request: Request):
    scheduler = _scheduler(request)
    return {
        "message": "Chartvolt Settlement API",
        "version": "1.0.0",
        "status": "operational",
        "scheduler_status": "running" if scheduler and scheduler.running else "stopped",
        "redis_status": "connected" if get_redis_client() else "disconnected"
    }

@app.get("/health")
async def health_check(request: Request):
    scheduler = _scheduler(request)
    return {
        "status": "healthy",
        "services": {
            "redis": "up" if get_redis_client() else "down",
            "scheduler": "up" if scheduler and scheduler.running else "down"
        },
        "last_settlement": scheduler.last_settlement if scheduler else None,
        "last_margin_check": scheduler.last_margin_check if scheduler else None
    }

# ============================================================================
# API ROUTES
# ============================================================================

from chartvolt.api import admin

app.include_router(admin.router)

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "chartvolt.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
