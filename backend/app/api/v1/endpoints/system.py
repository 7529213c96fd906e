# app/api/v1/endpoints/system.py
import asyncio
import resource
import sys
import time
from typing import Any, Dict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging_setup import logger

router = APIRouter()


def current_rss_mb() -> float:
    """Resident set size of this process. Falls back to the peak where /proc is unavailable."""
    try:
        with open("/proc/self/statm") as f:
            pages = int(f.read().split()[1])
        return pages * resource.getpagesize() / (1024 * 1024)
    except (OSError, ValueError, IndexError):
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is bytes on macOS, kilobytes elsewhere
        return peak / (1024 * 1024) if sys.platform == "darwin" else peak / 1024


async def event_loop_lag_ms() -> float:
    start = time.perf_counter()
    await asyncio.sleep(0)
    return (time.perf_counter() - start) * 1000


async def collect_checks(request: Request) -> Dict[str, Dict[str, Any]]:
    checks: Dict[str, Dict[str, Any]] = {}

    mongo = getattr(request.app.state, "mongo", None)
    db_ok = bool(mongo) and await mongo.ping()
    checks["database"] = {"ok": db_ok}

    rss = current_rss_mb()
    checks["memory"] = {"ok": rss < settings.HEALTH_MAX_RSS_MB, "rss_mb": round(rss, 1),
                        "limit_mb": settings.HEALTH_MAX_RSS_MB}

    lag = await event_loop_lag_ms()
    checks["event_loop"] = {"ok": lag < settings.HEALTH_MAX_LOOP_LAG_MS, "lag_ms": round(lag, 2),
                            "limit_ms": settings.HEALTH_MAX_LOOP_LAG_MS}

    limiters = getattr(request.app.state, "limiters", None)
    if limiters is not None:
        checks["limiters"] = {"ok": True, **limiters.snapshot()}

    job = getattr(request.app.state, "dispatch_job", None)
    checks["dispatch_job"] = {"ok": True, "running": bool(job and job.running)}
    return checks


@router.get("/health", tags=["System"], summary="Liveness and dependency health")
async def health_check(request: Request):
    checks = await collect_checks(request)
    healthy = all(c["ok"] for c in checks.values())
    if not healthy:
        failing = ", ".join(name for name, c in checks.items() if not c["ok"])
        logger.warning(f"Health check failing: {failing}")
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if healthy else "unhealthy", "service": settings.APP_NAME, "checks": checks},
    )
