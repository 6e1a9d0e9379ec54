import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aios.api.v1.router import api_v1_router
from aios.core.config import settings, validate_settings_for_production
from aios.core.logging import setup_logging
from aios.core.metrics import PrometheusMiddleware, metrics_response
from aios.core.sentry import init_sentry
from aios.gateway.config_store import build_config_store
from aios.gateway.dispatcher import Dispatcher

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting AIOS (config backend: %s)...", settings.config_backend)

    store = build_config_store(settings)
    await store.init()
    dispatcher = Dispatcher(store=store, timeout=settings.request_timeout_seconds)
    await dispatcher.reload()
    app.state.dispatcher = dispatcher

    yield

    # Shutdown
    await store.close()
    logger.info("AIOS shut down")


app = FastAPI(
    title="AIOS",
    description="AI provider routing with credential rotation and failover",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


app.add_middleware(PrometheusMiddleware)

# CORS: allowed_origins is comma-separated
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(request: Request):
    dispatcher: Dispatcher = request.app.state.dispatcher
    usable = [p.id for p in dispatcher.get_providers() if p.enabled and p.credentials.has_usable()]
    return {
        "status": "ok" if usable else "degraded",
        "usable_providers": usable,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("aios.main:app", host=settings.app_host, port=settings.app_port, log_config=None)
