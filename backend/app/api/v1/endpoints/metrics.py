# app/api/v1/endpoints/metrics.py

from fastapi import APIRouter, BackgroundTasks, Request, status

from app.api.deps import MetricsServiceDep
from app.db.schemas.metric_schemas import TrackMetricRequest

router = APIRouter()


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/track", status_code=status.HTTP_202_ACCEPTED, summary="Record a checkout funnel event")
async def track_metric(body: TrackMetricRequest, request: Request, background_tasks: BackgroundTasks,
                       metrics: MetricsServiceDep):
    background_tasks.add_task(metrics.track_safely, body, client_ip(request), request.headers.get("user-agent"))
    return {"accepted": True}
