# chargequeue/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, all routers, and the
startup/shutdown hooks that own the queue/session core.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from chargequeue.routers import queue, sessions, stations, health
from chargequeue.database import create_tables
from chargequeue.dependencies import build_core
from chargequeue.config import settings
from chargequeue.utils.logger import get_logger
import time

logger = get_logger(__name__)

app = FastAPI(
    title="ChargeQueue API",
    description="Admission queue and charging-session engine for EV charging stations.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS ─────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    async def dispatch(self, request: Request, call_next):
        open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}
        if request.url.path in open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Global Exception Handler ─────────────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(queue.router,    prefix="/api/v1", tags=["Queue"])
app.include_router(sessions.router, prefix="/api/v1", tags=["Sessions"])
app.include_router(stations.router, prefix="/api/v1", tags=["Stations"])
app.include_router(health.router,   prefix="/api/v1", tags=["Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("ChargeQueue backend starting up...")
    create_tables()
    logger.info("[DB] Database tables ready")

    core = build_core()
    app.state.core = core
    await core.recover()
    core.maintenance.start()

    logger.info(f"Listening on http://{settings.BACKEND_HOST}:{settings.BACKEND_PORT}")
    logger.info("API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("ChargeQueue backend shutting down...")
    core = getattr(app.state, "core", None)
    if core is not None:
        await core.shutdown()
