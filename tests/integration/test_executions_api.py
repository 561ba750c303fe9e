"""
Integration Tests for the Execution API

Drives the FastAPI application over ASGI with in-memory collaborators:
start (awaited and background), HITL resume, cancel, history and errors.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from workflow_engine.container import create_container
from workflow_engine.main import create_app


pytestmark = pytest.mark.integration

GATED_DEFINITION = {
    "nodes": [
        {"id": "trigger", "kind": "trigger"},
        {
            "id": "review",
            "kind": "action",
            "config": {
                "actionType": "edit-fields",
                "fieldMappings": [{"sourceField": "${execution.hitlResponse.value}", "targetField": "decision"}],
                "hitlBefore": {"enabled": True, "prompt": "Approve ${execution.formData.fields.company}?"},
            },
        },
        {"id": "after", "kind": "action", "config": {"actionType": "webhook"}},
    ],
    "edges": [
        {"source": "trigger", "target": "review"},
        {"source": "review", "target": "after"},
    ],
}

LEAD = {"fields": {"name": "Ann", "company": "Acme", "value": 250000}}


@pytest_asyncio.fixture
async def container(test_settings):
    container = create_container(test_settings)
    await container.initialize()
    yield container
    await container.shutdown()


@pytest_asyncio.fixture
async def client(test_settings, container):
    app = create_app(test_settings, container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test", headers={"X-User-Id": "user-42"}
    ) as client:
        yield client


async def wait_for_status(client, execution_id, *statuses, attempts=100):
    for _ in range(attempts):
        response = await client.get(f"/api/v1/executions/{execution_id}")
        if response.status_code == 200 and response.json()["status"] in statuses:
            return response.json()
        await asyncio.sleep(0.01)
    raise AssertionError(f"Execution {execution_id} never reached {statuses}")


# ==================== Start ====================


class TestStartExecution:
    """POST /workflows/{id}/executions"""

    @pytest.mark.asyncio
    async def test_bundled_workflow(self, client, container):
        """A stored definition runs to completion and is listed in history"""
        response = await client.post("/api/v1/workflows/lead-intake/executions", json={"trigger_data": LEAD})

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "completed"
        assert body["user_id"] == "user-42"
        assert [n["node_id"] for n in body["node_executions"]] == [
            "form-trigger", "value-router", "high-value-task", "notify-owner",
        ]
        [task] = await container.data_store.list_entities("tasks")
        assert task["title"] == "Call Acme"
        [notification] = container.effects.of_type("notification")
        assert notification["payload"]["recipients"] == ["user-42"]

        history = await client.get("/api/v1/workflows/lead-intake/executions")
        assert history.json()["total"] == 1
        assert history.json()["executions"][0]["id"] == body["id"]

    @pytest.mark.asyncio
    async def test_simulation(self, client, container):
        """Simulation runs are test-mode records with mocked effects"""
        response = await client.post(
            "/api/v1/workflows/lead-intake/executions",
            json={"trigger_data": LEAD, "is_simulation": True},
        )

        body = response.json()
        assert body["status"] == "completed"
        assert body["is_test_mode"] is True
        assert body["id"].startswith("sim-")
        assert await container.data_store.list_entities("tasks") == []

        live = await client.get("/api/v1/workflows/lead-intake/executions", params={"is_test_mode": "false"})
        assert live.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_background(self, client):
        """background=true answers 202 and the run finishes on its own"""
        response = await client.post(
            "/api/v1/workflows/lead-intake/executions",
            json={"trigger_data": LEAD, "background": True},
        )

        assert response.status_code == 202
        execution_id = response.json()["execution_id"]
        finished = await wait_for_status(client, execution_id, "completed")
        assert finished["workflow_id"] == "lead-intake"

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, client):
        response = await client.post("/api/v1/workflows/nope/executions", json={})

        assert response.status_code == 404
        assert response.json()["error_code"] == "RESOURCE_001"

    @pytest.mark.asyncio
    async def test_invalid_inline_definition(self, client):
        """Definitions referencing unknown nodes are rejected before running"""
        response = await client.post(
            "/api/v1/workflows/inline/executions",
            json={"definition": {"nodes": [{"id": "t", "kind": "trigger"}], "edges": [{"source": "t", "target": "x"}]}},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "WORKFLOW_001"

    @pytest.mark.asyncio
    async def test_request_validation(self, client):
        response = await client.post("/api/v1/workflows/lead-intake/executions", json={"trigger_data": "text"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_001"


# ==================== HITL ====================


class TestHumanInTheLoop:
    """Pausing, resuming and cancelling through the API"""

    async def _start_gated(self, client):
        response = await client.post(
            "/api/v1/workflows/approvals/executions",
            json={"trigger_data": LEAD, "definition": GATED_DEFINITION},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "waiting_hitl"
        return body

    @pytest.mark.asyncio
    async def test_resume(self, client):
        """An answered request resumes the run; a second answer is a conflict"""
        paused = await self._start_gated(client)

        pending = await client.get("/api/v1/hitl-requests", params={"status": "pending"})
        [request] = pending.json()["requests"]
        assert request["id"] == paused["current_hitl_request_id"]
        assert request["prompt"] == "Approve Acme?"

        resumed = await client.post(
            f"/api/v1/executions/{paused['id']}/resume", json={"response_value": "approved"}
        )
        assert resumed.status_code == 200
        body = resumed.json()
        assert body["status"] == "completed"
        review = [n for n in body["node_executions"] if n["node_id"] == "review"][0]
        assert review["output"]["transformedFields"] == {"decision": "approved"}

        again = await client.post(f"/api/v1/executions/{paused['id']}/resume", json={"response_value": "no"})
        assert again.status_code == 409
        assert again.json()["error_code"] == "HITL_002"

    @pytest.mark.asyncio
    async def test_cancel_paused(self, client):
        """Cancelling a paused run finalizes it once"""
        paused = await self._start_gated(client)

        cancelled = await client.post(f"/api/v1/executions/{paused['id']}/cancel")
        assert cancelled.json()["status"] == "cancelled"

        again = await client.post(f"/api/v1/executions/{paused['id']}/cancel")
        assert again.status_code == 409
        assert again.json()["error_code"] == "EXECUTION_001"

    @pytest.mark.asyncio
    async def test_resume_finished_run(self, client):
        """Resuming a run that never paused is a conflict"""
        response = await client.post("/api/v1/workflows/lead-intake/executions", json={"trigger_data": LEAD})

        resumed = await client.post(f"/api/v1/executions/{response.json()['id']}/resume", json={})

        assert resumed.status_code == 409
        assert resumed.json()["error_code"] == "EXECUTION_001"

    @pytest.mark.asyncio
    async def test_process_expired_none(self, client):
        await self._start_gated(client)

        response = await client.post("/api/v1/hitl-requests/process-expired")

        assert response.json() == {"executions": [], "total": 0}


# ==================== Queries ====================


class TestQueries:
    """History, lookup and service endpoints"""

    @pytest.mark.asyncio
    async def test_unknown_execution(self, client):
        response = await client.get("/api/v1/executions/missing")

        assert response.status_code == 404
        assert response.json()["error_code"] == "RESOURCE_001"

    @pytest.mark.asyncio
    async def test_clear_history(self, client):
        """Clearing history removes every record of the workflow"""
        for _ in range(2):
            await client.post("/api/v1/workflows/lead-intake/executions", json={"trigger_data": LEAD})

        cleared = await client.delete("/api/v1/workflows/lead-intake/executions")

        assert cleared.json() == {"workflow_id": "lead-intake", "deleted": 2}
        assert (await client.get("/api/v1/executions")).json()["total"] == 0

    @pytest.mark.asyncio
    async def test_health_and_metrics(self, client):
        health = await client.get("/api/v1/health")
        assert health.json()["status"] == "healthy"
        assert health.json()["storage_backend"] == "memory"

        metrics = await client.get("/metrics")
        assert metrics.status_code == 200
        assert "workflow_api_requests_total" in metrics.text
