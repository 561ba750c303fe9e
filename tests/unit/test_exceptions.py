"""
Unit Tests for Exceptions and HTTP Error Handlers
"""

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from pydantic import BaseModel

from workflow_engine.exceptions import (
    CycleDetectedError,
    ErrorCode,
    HITLAlreadyAnswered,
    InvalidExecutionState,
    JoinTimeout,
    NodeHandlerError,
    NotFoundError,
    ServiceUnavailableError,
)
from workflow_engine.middleware.error_handler import register_exception_handlers


class TestExceptions:
    """Exception attributes"""

    def test_not_found(self):
        error = NotFoundError("WorkflowExecution", "exec-1")

        assert error.status_code == 404
        assert error.error_code == ErrorCode.RESOURCE_NOT_FOUND
        assert error.to_dict()["details"] == {"resource": "WorkflowExecution", "identifier": "exec-1"}

    def test_conflicts_share_status(self):
        """Lifecycle conflicts are 409 with distinct codes"""
        answered = HITLAlreadyAnswered("req-1")
        invalid = InvalidExecutionState("exec-1", "completed", expected="waiting_hitl")

        assert (answered.status_code, answered.error_code.value) == (409, "HITL_002")
        assert (invalid.status_code, invalid.error_code.value) == (409, "EXECUTION_001")
        assert invalid.details["expected_state"] == "waiting_hitl"

    def test_service_codes(self):
        """Backing services map to their own codes"""
        assert ServiceUnavailableError("Redis").error_code == ErrorCode.SERVICE_REDIS_ERROR
        assert ServiceUnavailableError("database").error_code == ErrorCode.SERVICE_DATABASE_ERROR
        assert ServiceUnavailableError("smtp").error_code == ErrorCode.SERVICE_UNAVAILABLE
        assert ServiceUnavailableError("Redis").to_dict()["retry_after"] == 5

    def test_node_handler_wrap(self):
        """wrap() keeps the original error and does not double-wrap"""
        original = KeyError("email")
        wrapped = NodeHandlerError.wrap("n1", original)

        assert wrapped.__cause__ is original
        assert wrapped.details == {"node_id": "n1", "error_type": "KeyError"}
        assert NodeHandlerError.wrap("n1", wrapped) is wrapped

    def test_cycle_and_join_details(self):
        assert CycleDetectedError(cycle_path=["a", "b", "a"]).details == {"cycle_path": ["a", "b", "a"]}
        timeout = JoinTimeout("join", 5, completed=1, expected=2)
        assert timeout.message == "Join timeout after 5 seconds. Completed: 1/2"
        assert timeout.status_code == 504


# ==================== Handlers ====================


class Payload(BaseModel):
    count: int


@pytest.fixture
def error_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("WorkflowExecution", "exec-9")

    @app.get("/redis")
    async def redis_down():
        raise ServiceUnavailableError("Redis")

    @app.post("/validate")
    async def validate(payload: Payload):
        return payload

    @app.get("/crash")
    async def crash():
        raise RuntimeError("secret internals")

    return app


@pytest_asyncio.fixture
async def error_client(error_app):
    transport = httpx.ASGITransport(app=error_app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestErrorHandlers:
    """Exceptions rendered as JSON errors"""

    @pytest.mark.asyncio
    async def test_app_exception(self, error_client):
        """AppExceptions keep their status and code"""
        response = await error_client.get("/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error_code"] == "RESOURCE_001"
        assert body["path"] == "/missing"
        assert body["details"]["identifier"] == "exec-9"

    @pytest.mark.asyncio
    async def test_retry_after_header(self, error_client):
        """Retryable errors carry Retry-After"""
        response = await error_client.get("/redis")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_validation_error(self, error_client):
        """Request validation errors list each field"""
        response = await error_client.post("/validate", json={"count": "many"})

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_001"
        assert body["details"]["validation_errors"][0]["field"] == "body.count"

    @pytest.mark.asyncio
    async def test_unknown_route(self, error_client):
        """Router 404s use the same format"""
        response = await error_client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error_code"] == "RESOURCE_001"

    @pytest.mark.asyncio
    async def test_unhandled_exception_hidden(self, error_client):
        """Unhandled errors are 500 without internals outside DEBUG"""
        response = await error_client.get("/crash")

        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == "INTERNAL_001"
        assert body["message"] == "Internal server error"
        assert "secret" not in response.text
