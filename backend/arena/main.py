"""
Main FastAPI application
Entry point for the Forge Arena contest & ledger API
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from arena.core.config import settings
from arena.core.database import close_db, get_session_factory, init_db, init_engine
from arena.core.errors import ArenaError
from arena.core.redis import close_redis, get_redis_client, init_redis
from arena.core.security import get_security_headers, limiter
from arena.services.scheduler import ContestScheduler
from arena.services.tick_feed import BinanceTradeFeed

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# GLOBAL STATE (scheduler only; DB and Redis live in arena.core)
# ============================================================================

scheduler = None

# ============================================================================
# LIFESPAN CONTEXT MANAGER
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler

    logger.info("Starting Forge Arena API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    init_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    await init_db()
    logger.info("Database ready")

    # Redis is optional: price cache and leaderboard fan-out
    if settings.REDIS_URL:
        try:
            await init_redis(settings.REDIS_URL)
            logger.info("Redis connected")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            await close_redis()

    tick_source = None
    if settings.MARKET_FEED_ENABLED:
        tick_source = lambda: BinanceTradeFeed(settings.MARKET_FEED_SYMBOLS).ticks()
        logger.info(f"Live price feed enabled for {', '.join(settings.MARKET_FEED_SYMBOLS)}")

    scheduler = ContestScheduler(get_session_factory(), get_redis_client(), tick_source)
    await scheduler.start()

    logger.info("Application startup complete")

    yield  # Application runs here

    # ==================== SHUTDOWN ====================
    logger.info("Shutting down Forge Arena API")

    if scheduler:
        await scheduler.stop()
        scheduler = None

    await close_redis()
    logger.info("Redis connection closed")

    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")

# ============================================================================
# CREATE FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Forge Arena API",
    description="Virtual-currency trading contests: wallets, allocations, leaderboards, settlement",
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

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id", "X-Admin-Token"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for key, value in get_security_headers().items():
        response.headers[key] = value
    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": code, "message": message}
    )


@app.exception_handler(ArenaError)
async def arena_error_handler(request: Request, exc: ArenaError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.status_code, exc.error_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "Invalid request")
    return error_response(400, "VALIDATION_ERROR", message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return error_response(429, "RATE_LIMITED", "Rate limit exceeded. Please try again later.")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    if settings.DEBUG:
        return error_response(500, "INTERNAL_ERROR", f"{type(exc).__name__}: {exc}")

    return error_response(500, "INTERNAL_ERROR", "Internal server error")

# ============================================================================
# ROOT ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {
        "message": "Forge Arena API",
        "version": "1.0.0",
        "status": "operational",
        "scheduler_status": "running" if scheduler and scheduler.running else "stopped",
        "redis_status": "connected" if get_redis_client() else "disconnected"
    }

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "services": {
            "redis": "up" if get_redis_client() else "down",
            "scheduler": "up" if scheduler and scheduler.running else "down",
            "market_feed": "enabled" if settings.MARKET_FEED_ENABLED else "disabled"
        }
    }

# ============================================================================
# API ROUTES
# ============================================================================

from arena.api import admin, contests, market, replay, streams, wallet

app.include_router(contests.router, prefix="/contests", tags=["Contests"])
app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(market.router, prefix="/market", tags=["Market Data"])
app.include_router(replay.router, prefix="/replay", tags=["Replay"])
app.include_router(streams.router, tags=["Streams"])
app.include_router(admin.router)

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "arena.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
