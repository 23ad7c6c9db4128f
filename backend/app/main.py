"""
LCA Estimator API v1.0
FastAPI backend with async PostgreSQL: building-model ingestion, material
reconciliation, EC3 catalog matching and environmental indicator totals.
"""
import os
import sys
import time
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

# Load .env before anything reads os.getenv at import time
load_dotenv()

from app.services.errors import AppError  # noqa: E402
from app.services.logging_config import setup_logging  # noqa: E402
from app.services.middleware import RequestTimingMiddleware  # noqa: E402
from app.services.perf_monitor import tracker as perf_tracker  # noqa: E402

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("lca-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

# Startup validation
if not os.getenv("DATABASE_URL"):
    logger.warning("MISSING env var: DATABASE_URL, running in dev mode")
if not os.getenv("EC3_API_KEY"):
    logger.info("Optional env var not set: EC3_API_KEY (catalog calls are unauthenticated)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import init_db, engine
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="LCA Estimator API",
    version="1.0.0",
    description="Building-model ingestion and environmental-impact material matching",
    lifespan=lifespan,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message, extra={"http_path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

from app.api.ingestion_routes import router as ingestion_router  # noqa: E402

app.include_router(ingestion_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "catalog_configured": bool(os.getenv("EC3_API_KEY")),
    }


@app.get("/metrics")
async def metrics():
    """
    Performance metrics endpoint.

    Ingestion throughput, per-step durations and error counts from the
    in-process PerformanceTracker, plus peak process memory.
    """
    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        memory_mb = round(usage.ru_maxrss / divisor, 2)
    except ImportError:
        pass

    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **perf_tracker.get_metrics(),
    }
