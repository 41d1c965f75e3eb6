"""ChangeSwap — FastAPI Application Entry Point."""

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from changeswap.config import settings
from changeswap.database import init_db, session_scope
from changeswap.errors import ExchangeError
from changeswap.middleware.rate_limit import limiter
from changeswap.routers import auth, posts, matches, exchanges, notifications
from changeswap.services import expiry_service
from changeswap.services.store_retry import transient_errors

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("changeswap")

# Create all tables on startup
init_db()

_cors_origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app = FastAPI(
    title="ChangeSwap",
    description="Peer-to-peer cash denomination exchange.",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ExchangeError)
async def exchange_error_handler(request: Request, exc: ExchangeError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(auth.router)
app.include_router(posts.router)
app.include_router(matches.router)
app.include_router(exchanges.router)
app.include_router(notifications.router)


def _sweep_once() -> dict:
    with session_scope() as db, transient_errors(db):
        return expiry_service.run_sweep(db)


async def _expiry_loop():
    interval = settings.EXPIRY_SWEEP_INTERVAL_SECONDS
    while True:
        await asyncio.sleep(interval)
        try:
            result = await asyncio.to_thread(_sweep_once)
        except ExchangeError as e:
            logger.warning("Expiry sweep skipped: %s", e.message)
            continue
        if any(result.values()):
            logger.info("Expiry sweep: %s", result)


@app.on_event("startup")
async def on_startup():
    """Start the periodic expiry sweep."""
    if settings.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
        app.state.expiry_task = asyncio.create_task(_expiry_loop())
        logger.info("Expiry sweep every %ss", settings.EXPIRY_SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "expiry_task", None)
    if task:
        task.cancel()


@app.get("/")
def root():
    return {"name": "ChangeSwap API", "version": "0.1.0", "docs": "/docs"}


@app.get("/health")
def health():
    return {"status": "ok"}
