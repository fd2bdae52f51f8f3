from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from creatorcrm.core.middleware import RequestContextMiddleware, get_correlation_id, metrics_response

pytestmark = pytest.mark.unit


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware, service_name="test-service")

    @app.get("/ping")
    async def ping() -> dict[str, str]:
        return {"status": "ok", "correlation": get_correlation_id() or ""}

    @app.get("/metrics")
    async def metrics():
        return metrics_response()

    return app


def test_request_context_middleware_injects_correlation_id():
    client = TestClient(_app())
    response = client.get("/ping")

    assert response.status_code == 200
    assert "X-Request-ID" in response.headers
    assert response.json()["correlation"] == response.headers["X-Request-ID"]


def test_incoming_request_id_is_reused_and_counted():
    client = TestClient(_app())

    response = client.get("/ping", headers={"X-Request-ID": "req-123"})
    metrics = client.get("/metrics")

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["correlation"] == "req-123"
    assert 'route="/ping"' in metrics.text
