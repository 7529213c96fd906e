# app/core/logging_setup.py
import sys
import logging
import json
from loguru import logger
import contextvars
import uuid
from fastapi import Request

# Import settings safely
try:
    from app.core.config import settings
    LOG_LEVEL = settings.LOG_LEVEL
    APP_NAME = settings.APP_NAME
except Exception as e:
    # Fallback if settings fail to load early
    LOG_LEVEL = "INFO"
    APP_NAME = "checkout_engine_unknown"
    print(f"[Logging Setup Warning] Could not load settings: {e}. Using defaults.")

# Context variable for trace ID
trace_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("trace_id", default=None)


# --- Loguru Configuration (Using JSON Sink) ---
def serialize_loguru(record):
    """Custom serializer for Loguru records to produce structured JSON."""
    subset = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "trace_id": record["extra"].get("trace_id") or trace_id_var.get() or "NO_TRACE_ID",
        "service": APP_NAME,
    }
    if "name" in record: subset["logger"] = record["name"]
    if "function" in record: subset["function"] = record["function"]
    if "line" in record: subset["line"] = record["line"]

    # Bound extra context (trace_id already handled)
    subset.update({k: v for k, v in record["extra"].items() if k != "trace_id"})

    if record["exception"]:
        exc_type, exc_value, _tb = record["exception"]
        subset["exception"] = {
            "type": exc_type.__name__ if exc_type else "Unknown",
            "value": str(exc_value),
        }
    return json.dumps(subset, default=str)


def sink_serializer(message):
    """Wrapper function to pass the record to the serializer."""
    print(serialize_loguru(message.record), file=sys.stderr)


class InterceptHandler(logging.Handler):
    """Routes stdlib logging records (uvicorn, pymongo, httpx) into Loguru."""
    def emit(self, record: logging.LogRecord):
        try: level = logger.level(record.levelname).name
        except ValueError: level = record.levelno
        frame = logging.currentframe(); depth = 0
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back; depth += 1
        if frame is None: depth = 0
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(json_output: bool = True):
    """Configure Loguru for structured JSON logging."""
    logger.remove()
    log_level = LOG_LEVEL.upper()

    if json_output:
        logger.add(sink_serializer, level=log_level, enqueue=True)
    else:
        # Human readable output for the CLI tools
        logger.add(sys.stderr, level=log_level, format="{time:HH:mm:ss} | {level: <8} | {message}")

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING if log_level != "DEBUG" else logging.INFO)
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info(f"Logging configured. Level: {log_level}. Service: {APP_NAME}")


async def trace_id_middleware(request: Request, call_next):
    """Sets and resets the trace_id context variable for each request."""
    trace_id = request.headers.get("X-Trace-ID", str(uuid.uuid4()))
    request.state.trace_id = trace_id
    token = trace_id_var.set(trace_id)
    try:
        response = await call_next(request)
    finally:
        trace_id_var.reset(token)
    response.headers["X-Trace-ID"] = trace_id
    return response
