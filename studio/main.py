import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studio import __version__
from studio.api.v1.router import api_v1_router
from studio.core.config import settings, validate_settings_for_production
from studio.core.exceptions import StudioError
from studio.core.logging import setup_logging
from studio.core.metrics import PrometheusMiddleware, metrics_response
from studio.core.sentry import init_sentry
from studio.services.studio_service import create_studio_service

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting Imagine Studio...")

    if getattr(app.state, "studio", None) is None:
        app.state.studio = await create_studio_service()
    await app.state.studio.startup()

    yield

    # Shutdown
    await app.state.studio.shutdown()
    logger.info("Imagine Studio shut down")


app = FastAPI(
    title="Imagine Studio",
    description="Video and image job orchestration over the xAI API with a rotating key pool",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(StudioError)
async def _studio_error_handler(request: Request, exc: StudioError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Metrics middleware
app.add_middleware(PrometheusMiddleware)

# CORS: allowed_origins is comma-separated
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(request: Request):
    studio = getattr(request.app.state, "studio", None)
    return {
        "status": "ok",
        "keys": len(studio.pool) if studio else 0,
        "active_request_id": studio.engine.active_job_id if studio else None,
        "default_key": bool(settings.xai_api_key),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
