"""
Tests for the `/health` endpoint in `app/api/v1/endpoints/system.py`.
"""

from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.v1.endpoints import system
from app.core.concurrency import LimiterRegistry


class FakeMongo:
    def __init__(self, ok=True):
        self.ok = ok

    async def ping(self):
        return self.ok


def health_app(mongo_ok=True):
    app = FastAPI()
    app.include_router(system.router)
    app.state.mongo = FakeMongo(mongo_ok)
    app.state.limiters = LimiterRegistry.for_channels(["stripe"], permits=10, max_waiting=100, acquire_timeout=25)
    app.state.dispatch_job = SimpleNamespace(running=True)
    return app


def test_healthy_process_reports_ok():
    response = TestClient(health_app()).get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"]["database"] == {"ok": True}
    assert body["checks"]["limiters"]["stripe"]["capacity"] == 10
    assert body["checks"]["dispatch_job"]["running"] is True
    assert body["checks"]["memory"]["rss_mb"] > 0


def test_unreachable_database_reports_503():
    response = TestClient(health_app(mongo_ok=False)).get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert response.json()["checks"]["database"]["ok"] is False


def test_memory_over_limit_is_unhealthy(monkeypatch):
    monkeypatch.setattr(system, "current_rss_mb", lambda: 99999.0)

    response = TestClient(health_app()).get("/health")

    assert response.status_code == 503
    assert response.json()["checks"]["memory"]["ok"] is False
