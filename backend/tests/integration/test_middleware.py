"""
Integration tests for FastAPI middleware (CORS, correlation_id).
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from mailroom.api.app import app

client = TestClient(app)


def test_cors_headers_included():
    response = client.get(
        "/health",
        headers={"Origin": "http://localhost:3000"}
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_cors_preflight_request():
    response = client.options(
        "/admin/campaigns",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type,authorization",
        }
    )

    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers
    assert "access-control-allow-methods" in response.headers


def test_correlation_id_generated():
    response = client.get("/health")

    assert response.status_code == 200
    correlation_id = response.headers["X-Correlation-ID"]
    try:
        uuid.UUID(correlation_id)
    except ValueError:
        pytest.fail(f"Correlation ID is not a valid UUID: {correlation_id}")


def test_correlation_id_preserved():
    custom_correlation_id = str(uuid.uuid4())

    response = client.get(
        "/health",
        headers={"X-Correlation-ID": custom_correlation_id}
    )

    assert response.status_code == 200
    assert response.headers["X-Correlation-ID"] == custom_correlation_id


def test_correlation_id_on_error():
    """Error bodies and headers carry the request's correlation id."""
    custom_correlation_id = str(uuid.uuid4())

    response = client.get(
        "/admin/campaigns",
        headers={"X-Correlation-ID": custom_correlation_id}
    )

    assert response.status_code == 401
    assert response.headers["X-Correlation-ID"] == custom_correlation_id
    body = response.json()
    assert body["correlation_id"] == custom_correlation_id
    assert body["code"] == "UNAUTHORIZED"


def test_unknown_route():
    response = client.get("/nowhere")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
