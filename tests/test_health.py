"""Tests for health check and metrics endpoints."""

import pytest

from registry_edge import create_app
from registry_edge.config import ServerConfig


@pytest.mark.asyncio
async def test_health_check(client):
    """Test /healthz endpoint returns healthy status."""
    response = await client.get("/healthz")
    assert response.status_code == 200

    data = await response.get_json()
    assert data["status"] == "healthy"


@pytest.mark.asyncio
async def test_readiness_check(client):
    """Test /readyz endpoint returns ready status."""
    response = await client.get("/readyz")
    assert response.status_code == 200

    data = await response.get_json()
    assert data["status"] == "ready"


@pytest.mark.asyncio
async def test_readiness_with_bad_config():
    """Test /readyz reports an unusable proxy configuration."""
    app = create_app(ServerConfig(proxy_env={"PATHNAME_REGEX": "^/v2/"}))
    client = app.test_client()

    response = await client.get("/readyz")
    assert response.status_code == 503

    data = await response.get_json()
    assert data["status"] == "not ready"
    assert "PROXY_HOSTNAME" in data["error"]


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    """Test /metrics endpoint returns Prometheus metrics."""
    response = await client.get("/metrics")
    assert response.status_code == 200

    content = await response.get_data(as_text=True)
    assert "registry_edge_requests_total" in content


@pytest.mark.asyncio
async def test_metrics_snapshot(client):
    """Test /metrics/snapshot returns the JSON counters."""
    await client.get("/v2/", headers={"Host": "myproxy.example"})

    response = await client.get("/metrics/snapshot")
    assert response.status_code == 200

    data = await response.get_json()
    assert data["requests"] == 1
    assert data["errorRate"] == 0
    assert "timestamp" in data
