"""Tests for GET /api/health and the API root."""
import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_returns_200(client: AsyncClient):
    resp = await client.get("/api/health/")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"
    assert data["ollama"] == "ok"
    assert "X-Process-Time" in resp.headers


@pytest.mark.asyncio
async def test_health_degraded_when_llm_down(client: AsyncClient, completion):
    completion.healthy = False
    resp = await client.get("/api/health/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "degraded"
    assert resp.json()["ollama"] == "error"


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    resp = await client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "FormGen API"
    assert data["endpoints"]["templates"] == "/api/templates"
    assert data["endpoints"]["documents"] == "/api/documents"
