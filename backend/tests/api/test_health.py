"""
Hive - Health & Root Tests
==========================
"""

from httpx import AsyncClient


class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["dispatch_backend"] in ("cli", "gateway")

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["api"] == "/api/v1"
        assert data["pipeline"] == ["implement", "verify", "test", "deploy"]
