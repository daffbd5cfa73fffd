"""
Hive - Dashboard API Tests
==========================
"""

from httpx import AsyncClient


class TestDashboardApi:
    async def test_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/hive/dashboard")

        assert response.status_code == 401

    async def test_board(self, client: AsyncClient, admin_headers, orchestrator, project, task):
        await orchestrator.greenlight(task.id)
        done = await orchestrator.create_task(project_id=project.id, title="Shipped", auto_run=True)
        await orchestrator.greenlight(done.id)
        for _ in range(4):
            await orchestrator.advance(done.id, output="ok")
        await orchestrator.feedback(done.id, "Tweak the wording")

        response = await client.get("/api/v1/hive/dashboard", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert set(data["stages"]) == {"plan", "implement", "verify", "test", "deploy", "done"}
        implement = data["stages"]["implement"]
        assert [t["id"] for t in implement] == [task.id]
        assert implement[0]["latest_run"]["status"] == "running"
        assert [t["title"] for t in data["stages"]["plan"]] == ["Shipped (iteration)"]
        assert data["archived"][0]["id"] == done.id
        assert data["counts"]["total"] == 3
        assert data["counts"]["by_status"]["archived"] == 1
        assert data["projects"][0]["name"] == "hive-demo"

    async def test_archive_limit_param(self, client: AsyncClient, admin_headers, orchestrator, project):
        for i in range(3):
            t = await orchestrator.create_task(project_id=project.id, title=f"Old {i}")
            await orchestrator.archive(t.id)

        response = await client.get(
            "/api/v1/hive/dashboard",
            params={"archive_limit": 1},
            headers=admin_headers,
        )

        assert len(response.json()["archived"]) == 1
