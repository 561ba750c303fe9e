"""Pytest configuration and fixtures for workflow engine tests"""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from workflow_engine.config import Settings
from workflow_engine.database import create_session_factory
from workflow_engine.models import Base
from workflow_engine.services.ai_provider import AIResponse
from workflow_engine.services.data_store import InMemoryDataStore
from workflow_engine.services.effects import InMemoryEffectDispatcher
from workflow_engine.services.identity import StaticIdentityProvider
from workflow_engine.services.variable_store import InMemoryVariableStore
from workflow_engine.workflows.graph import WorkflowGraph
from workflow_engine.workflows.hitl import HITLGate
from workflow_engine.workflows.persistence import InMemoryExecutionStore
from workflow_engine.workflows.registry import NodeServices, create_default_registry
from workflow_engine.workflows.state import ExecutionContext, ExecutionOptions, WorkflowExecution
from workflow_engine.workflows.variables import VariableContext, VariableScope
from workflow_engine.workflows.walker import GraphWalker


# ==================== Settings ====================


@pytest.fixture
def test_settings():
    """Settings tuned for fast, deterministic tests"""
    return Settings(
        ENVIRONMENT="test",
        DEFAULT_JOIN_TIMEOUT_SECONDS=5.0,
        AI_RETRY_DELAY_SECONDS=0.0,
        SKIP_HITL_IN_SIMULATION=True,
        EXECUTION_RETENTION_LIMIT=25,
    )


# ==================== Collaborators ====================


@pytest.fixture
def execution_store():
    return InMemoryExecutionStore(retention_limit=25)


@pytest.fixture
def data_store():
    return InMemoryDataStore()


@pytest.fixture
def effects():
    return InMemoryEffectDispatcher()


@pytest.fixture
def variable_store():
    return InMemoryVariableStore()


@pytest.fixture
def identity():
    return StaticIdentityProvider("user-1")


@pytest.fixture
def mock_ai_provider():
    """AI provider returning a fixed completion"""
    provider = AsyncMock()
    provider.name = "mock-ai"
    provider.complete = AsyncMock(return_value=AIResponse(content="AI says hello", model="mock-model"))
    provider.run_assistant = AsyncMock(
        return_value=AIResponse(content="Assistant reply", model="mock-model", thread_id="thread_123")
    )
    return provider


@pytest.fixture
def services(mock_ai_provider, data_store, effects, identity, test_settings):
    return NodeServices(
        ai_provider=mock_ai_provider,
        data_store=data_store,
        effects=effects,
        identity=identity,
        settings=test_settings,
    )


@pytest.fixture
def registry():
    return create_default_registry()


@pytest.fixture
def hitl_gate(data_store, effects, identity, test_settings):
    return HITLGate(data_store, effects=effects, identity=identity, settings=test_settings)


@pytest.fixture
def walker(registry, execution_store, hitl_gate, services, variable_store, test_settings):
    """Graph walker over in-memory collaborators"""
    return GraphWalker(
        registry=registry,
        execution_store=execution_store,
        hitl_gate=hitl_gate,
        services=services,
        variable_store=variable_store,
        settings=test_settings,
    )


# ==================== Graph Builders ====================


@pytest.fixture
def make_graph():
    """Build a WorkflowGraph from node dicts and (source, target[, label]) tuples"""
    def _make(nodes: List[Dict[str, Any]], edges: List[tuple], graph_id: str = "wf-test") -> WorkflowGraph:
        edge_dicts = [
            {"source": edge[0], "target": edge[1], "label": edge[2] if len(edge) > 2 else None}
            for edge in edges
        ]
        return WorkflowGraph.from_lists(nodes, edge_dicts, graph_id=graph_id, name="Test workflow")
    return _make


@pytest.fixture
def make_context(services):
    """Build an ExecutionContext for calling handlers directly"""
    def _make(
        graph: WorkflowGraph,
        fields: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionContext:
        execution = WorkflowExecution(id="exec-1", workflow_id=graph.id)
        variables = VariableContext(workflow_id=graph.id, execution_id="exec-1", environment="test")
        if fields is not None:
            variables.set(VariableScope.EXECUTION, "formData", {"fields": fields, "submittedAt": "2026-01-01T00:00:00"})
        context = ExecutionContext(execution, graph, variables, options or ExecutionOptions(user_id="user-1"))
        context.services = services
        return context
    return _make


@pytest.fixture
def lead_fields():
    return {
        "name": "Ann Lee",
        "email": "Ann.Lee@Example.com",
        "company": "Acme",
        "value": 250000,
    }


# ==================== Database Fixtures ====================


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with all tables created"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)
