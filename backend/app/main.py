# app/main.py
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

# --- Core Imports ---
from app.api.v1.api import api_router
from app.api.v1.endpoints import system
from app.core.config import settings
from app.core.exceptions import (
    CapacityError, DataError, IntegrationError, ProviderAPIError, RepositoryError, WebhookAuthenticationError,
)
from app.core.http_client import build_http_client
from app.core.logging_setup import logger, setup_logging, trace_id_middleware
from app.core.supervisor import BackgroundTaskRunner, FailureCascadeMonitor, ShutdownCoordinator
from app.db.mongo_client import MongoConnection
from app.services.components import build_components

# --- Configure Logging ---
setup_logging()

# --- Rate Limiter (global, keyed on client address) ---
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.GLOBAL_RATE_LIMIT])


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", "N/A")


# --- Custom Exception Handlers ---
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.bind(trace_id=_trace_id(request)).warning(f"HTTP Exception: Status={exc.status_code}, Detail={exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.bind(trace_id=_trace_id(request)).warning(f"Validation Error: Path={request.url.path}, Errors={exc.errors()}")
    details = [{"loc": list(e.get("loc", [])), "msg": e.get("msg", ""), "type": e.get("type", "validation_error")}
               for e in exc.errors()]
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": details})


async def webhook_auth_error_handler(request: Request, exc: WebhookAuthenticationError):
    logger.bind(trace_id=_trace_id(request), provider=exc.provider).warning(f"Webhook rejected: {exc.reason}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "Webhook verification failed."})


async def data_error_handler(request: Request, exc: DataError):
    # Permanent problem with the event: acknowledge so the provider stops retrying
    logger.bind(trace_id=_trace_id(request)).error(f"Data Error acknowledged: {exc}")
    return JSONResponse(status_code=status.HTTP_200_OK, content={"received": True})


async def repository_error_handler(request: Request, exc: RepositoryError):
    logger.bind(trace_id=_trace_id(request)).error(f"Repository/Database Error: {exc}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Database operation failed."})


async def upstream_error_handler(request: Request, exc: Exception):
    logger.bind(trace_id=_trace_id(request)).error(f"Upstream Error: {exc}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


async def capacity_error_handler(request: Request, exc: CapacityError):
    logger.bind(trace_id=_trace_id(request)).warning(f"Shedding load: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, retry later."},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


async def generic_unhandled_exception_handler(request: Request, exc: Exception):
    trace_id = _trace_id(request)
    logger.bind(trace_id=trace_id).exception(f"Unhandled Exception: Path={request.url.path}")
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is not None:
        monitor.record(f"request:{request.url.path}", exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                        content={"detail": "Internal Server Error"}, headers={"X-Trace-ID": trace_id})


# --- Application Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds every process-wide object on app.state; tears them down under a deadline."""
    logger.info(f"Starting up {settings.APP_NAME}...")
    shutdown = ShutdownCoordinator(settings.SHUTDOWN_TIMEOUT_SECONDS)
    monitor = FailureCascadeMonitor(
        settings.FAILURE_CASCADE_THRESHOLD,
        settings.FAILURE_CASCADE_WINDOW_SECONDS,
        on_cascade=shutdown.request_exit,
    )
    background = BackgroundTaskRunner(monitor)
    mongo = MongoConnection(on_fatal=shutdown.request_exit)
    http = None
    try:
        await mongo.connect()
        await mongo.ensure_indexes()
        mongo.start_watchdog()
        http = build_http_client()
        components = build_components(mongo.db, http, background)
    except Exception as e:
        logger.critical(f"Application startup failed: {e}")
        await mongo.shutdown()
        if http is not None:
            await http.aclose()
        raise RuntimeError(f"Startup error: {e}") from e

    asyncio.get_running_loop().set_exception_handler(monitor.loop_exception_handler)

    app.state.monitor = monitor
    app.state.shutdown = shutdown
    app.state.background = background
    app.state.mongo = mongo
    app.state.http = http
    app.state.limiters = components.limiters
    app.state.ingestion = components.ingestion
    app.state.upsell_manager = components.upsell_manager
    app.state.metrics_service = components.metrics_service
    app.state.dispatch_job = components.dispatch_job

    if settings.DISPATCH_ENABLED:
        components.dispatch_job.start()
    else:
        logger.warning("Consolidated dispatch job disabled by configuration.")

    # Order matters: stop producing work before closing what it depends on
    shutdown.add_step("stop dispatch job", components.dispatch_job.stop)
    shutdown.add_step("drain background tasks", lambda: background.drain(settings.DISPATCH_STOP_TIMEOUT_SECONDS))
    shutdown.add_step("stop mongo watchdog", mongo.stop_watchdog)
    shutdown.add_step("close http client", http.aclose)
    shutdown.add_step("close mongo", mongo.shutdown)

    logger.info("Startup sequence complete.")
    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await shutdown.run_steps()
    logger.info("Shutdown complete.")


# --- FastAPI App ---
app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    exception_handlers={
        StarletteHTTPException: http_exception_handler,
        RequestValidationError: validation_exception_handler,
        RateLimitExceeded: _rate_limit_exceeded_handler,
        WebhookAuthenticationError: webhook_auth_error_handler,
        DataError: data_error_handler,
        RepositoryError: repository_error_handler,
        ProviderAPIError: upstream_error_handler,
        IntegrationError: upstream_error_handler,
        CapacityError: capacity_error_handler,
        Exception: generic_unhandled_exception_handler,
    },
)

# --- Apply Middlewares ---
# Trace ID first so every later log line carries it
app.add_middleware(BaseHTTPMiddleware, dispatch=trace_id_middleware)

if settings.ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Trace-ID"],
    )

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# --- Routers ---
app.include_router(api_router, prefix=settings.API_V1_PREFIX)
app.include_router(system.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.HOST, port=settings.PORT,
        reload=settings.RELOAD, log_level=settings.LOG_LEVEL.lower(),
    )
