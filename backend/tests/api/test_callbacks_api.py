"""
Hive - Worker Callback API Tests
================================

Agents report back through the URLs embedded in their instructions.
"""

from urllib.parse import urlsplit

from httpx import AsyncClient

from hive.core.pipeline.prompts import CallbackUrls
from hive.core.config import settings


def _path(url: str) -> str:
    """Strip scheme and host so the test client can call the URL."""
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}" if parts.query else parts.path


class TestCallbacks:
    async def test_prompt_urls_drive_the_pipeline(self, client: AsyncClient, admin_headers, dispatcher, task):
        """Each stage's agent calls the advance URL from its own instructions."""
        await client.post(f"/api/v1/hive/tasks/{task.id}/greenlight", headers=admin_headers)

        for expected_next in ("verify", "test", "deploy", None):
            run_id = int(dispatcher.calls[-1]["label"].rsplit("-", 1)[1])
            response = await client.get(f"/api/v1/hive/tasks/{task.id}", headers=admin_headers)
            run = next(r for r in response.json()["runs"] if r["id"] == run_id)
            assert run["status"] == "running"

            token = run["prompt"].split("token=", 1)[1].split("'", 1)[0]
            urls = CallbackUrls.for_task(settings.HIVE_CALLBACK_BASE_URL, task.id, token)
            assert urls.advance in dispatcher.last_instruction

            result = await client.post(_path(urls.advance), json={"output": "ok"})

            assert result.status_code == 200
            body = result.json()
            if expected_next is None:
                assert body["completed"] is True
                assert body["task"]["status"] == "done"
            else:
                assert body["next_run"]["stage"] == expected_next

    async def test_callback_response_hides_next_token(self, client: AsyncClient, orchestrator, task):
        """A worker learns nothing that lets it report for the next stage."""
        first = (await orchestrator.greenlight(task.id)).next_run

        response = await client.post(
            f"/api/v1/hive/tasks/{task.id}/advance",
            params={"token": first.callback_token},
            json={"output": "ok"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["next_run"]["stage"] == "verify"
        assert "prompt" not in body["next_run"]
        assert "prompt" not in body["run"]
        assert "token=" not in response.text

        replay = await client.post(
            f"/api/v1/hive/tasks/{task.id}/advance",
            params={"token": first.callback_token},
            json={"output": "ok"},
        )
        assert replay.status_code == 409
        assert task.stage == "verify"

    async def test_fail_response_hides_retry_token(self, client: AsyncClient, orchestrator, task):
        first = (await orchestrator.greenlight(task.id)).next_run

        response = await client.post(
            f"/api/v1/hive/tasks/{task.id}/fail",
            params={"token": first.callback_token},
            json={"error": "boom"},
        )

        assert response.json()["retried"] is True
        assert "token=" not in response.text

    async def test_callback_requires_auth(self, client: AsyncClient, admin_headers, task):
        await client.post(f"/api/v1/hive/tasks/{task.id}/greenlight", headers=admin_headers)

        response = await client.post(f"/api/v1/hive/tasks/{task.id}/advance", json={"output": "ok"})

        assert response.status_code == 401

    async def test_admin_may_advance_without_token(self, client: AsyncClient, admin_headers, task):
        await client.post(f"/api/v1/hive/tasks/{task.id}/greenlight", headers=admin_headers)

        response = await client.post(
            f"/api/v1/hive/tasks/{task.id}/advance",
            json={"output": "manually verified"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["run"]["output"] == "manually verified"

    async def test_empty_body_accepted(self, client: AsyncClient, admin_headers, task):
        await client.post(f"/api/v1/hive/tasks/{task.id}/greenlight", headers=admin_headers)

        response = await client.post(f"/api/v1/hive/tasks/{task.id}/advance", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["run"]["output"] is None

    async def test_advance_without_run(self, client: AsyncClient, admin_headers, task):
        response = await client.post(
            f"/api/v1/hive/tasks/{task.id}/advance",
            json={"output": "ok"},
            headers=admin_headers,
        )

        assert response.status_code == 409

    async def test_superseded_token_rejected(self, client: AsyncClient, admin_headers, orchestrator, task):
        first = (await orchestrator.greenlight(task.id)).next_run
        await orchestrator.fail(task.id, error="boom", callback_token=first.callback_token)

        response = await client.post(
            f"/api/v1/hive/tasks/{task.id}/fail",
            params={"token": first.callback_token},
            json={"error": "boom"},
        )

        assert response.status_code == 409
        assert task.retry_count == 1

    async def test_fail_retries_then_fails(self, client: AsyncClient, admin_headers, orchestrator, dispatcher, task):
        await orchestrator.greenlight(task.id)

        statuses = []
        for attempt in range(3):
            runs = await orchestrator.list_runs(task.id)
            response = await client.post(
                f"/api/v1/hive/tasks/{task.id}/fail",
                params={"token": runs[-1].callback_token},
                json={"error": f"attempt {attempt} failed"},
            )
            assert response.status_code == 200
            statuses.append((response.json()["task"]["status"], response.json()["retried"]))

        assert statuses == [("running", True), ("running", True), ("failed", False)]
        assert "attempt 1 failed" in dispatcher.last_instruction

    async def test_dispatch_failure_on_advance(self, client: AsyncClient, admin_headers, orchestrator, dispatcher, task):
        first = (await orchestrator.greenlight(task.id)).next_run
        dispatcher.fail_with = "spawn refused"

        response = await client.post(
            f"/api/v1/hive/tasks/{task.id}/advance",
            params={"token": first.callback_token},
            json={"output": "ok"},
        )

        assert response.status_code == 502
        assert first.status == "passed"
