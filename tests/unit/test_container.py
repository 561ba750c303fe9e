"""
Unit Tests for Settings and the Dependency Container
"""

import pytest
from pydantic import ValidationError

from workflow_engine.config import Settings
from workflow_engine.container import create_container
from workflow_engine.logging_config import MAX_FIELD_LENGTH, truncate_long_values
from workflow_engine.services.data_store import InMemoryDataStore, SqlAlchemyDataStore
from workflow_engine.services.effects import InMemoryEffectDispatcher, WebhookEffectDispatcher
from workflow_engine.services.identity import RequestIdentityProvider
from workflow_engine.services.ai_provider import HTTPCompletionProvider
from workflow_engine.services.variable_store import InMemoryVariableStore, RedisVariableStore
from workflow_engine.workflows.persistence import InMemoryExecutionStore, SqlAlchemyExecutionStore
from workflow_engine.workflows.state import ExecutionStatus


class TestSettings:
    """Settings validation"""

    def test_environment_normalized(self):
        assert Settings(ENVIRONMENT="Production").ENVIRONMENT == "production"

    @pytest.mark.parametrize("field,value", [
        ("ENVIRONMENT", "moon"),
        ("STORAGE_BACKEND", "files"),
        ("VARIABLE_BACKEND", "memcached"),
        ("EXECUTION_RETENTION_LIMIT", 0),
    ])
    def test_rejects_invalid_values(self, field, value):
        """Unknown backends and stages are rejected"""
        with pytest.raises(ValidationError):
            Settings(**{field: value})


class TestContainer:
    """create_container wiring"""

    def test_memory_defaults(self, test_settings):
        """Memory backends and dev collaborators without external config"""
        container = create_container(test_settings)

        assert isinstance(container.execution_store, InMemoryExecutionStore)
        assert container.execution_store.retention_limit == 25
        assert isinstance(container.data_store, InMemoryDataStore)
        assert isinstance(container.variable_store, InMemoryVariableStore)
        assert isinstance(container.effects, InMemoryEffectDispatcher)
        assert isinstance(container.identity, RequestIdentityProvider)
        assert container.ai_provider is None
        assert container.db_engine is None
        assert container.walker.store is container.execution_store
        assert container.execution_service.walker is container.walker

    def test_external_backends(self):
        """Database, Redis, AI and webhook settings select real clients"""
        settings = Settings(
            ENVIRONMENT="test",
            STORAGE_BACKEND="database",
            DATABASE_URL="sqlite+aiosqlite:///:memory:",
            VARIABLE_BACKEND="redis",
            AI_API_KEY="sk-test",
            EFFECT_WEBHOOK_URL="https://hooks.test/effects",
            EXECUTION_RETENTION_LIMIT=5,
        )

        container = create_container(settings)

        assert isinstance(container.execution_store, SqlAlchemyExecutionStore)
        assert container.execution_store.retention_limit == 5
        assert isinstance(container.data_store, SqlAlchemyDataStore)
        assert isinstance(container.variable_store, RedisVariableStore)
        assert isinstance(container.ai_provider, HTTPCompletionProvider)
        assert isinstance(container.effects, WebhookEffectDispatcher)
        assert container.session_factory is not None

    def test_overrides(self, test_settings, execution_store, data_store):
        """Explicit collaborators replace the defaults"""
        container = create_container(test_settings, execution_store=execution_store, data_store=data_store)

        assert container.execution_store is execution_store
        assert container.data_store is data_store
        assert container.hitl_gate.data_store is data_store

    @pytest.mark.asyncio
    async def test_lifecycle(self, test_settings, db_engine, session_factory):
        """initialize() and shutdown() run once each"""
        container = create_container(
            test_settings.model_copy(update={"STORAGE_BACKEND": "database"}),
            db_engine=db_engine,
            session_factory=session_factory,
        )

        await container.initialize()
        await container.initialize()
        assert container.is_initialized

        await container.shutdown()
        await container.shutdown()
        assert container.is_shutdown

    @pytest.mark.asyncio
    async def test_runs_bundled_workflow(self, test_settings):
        """The default loader serves the bundled definitions"""
        container = create_container(test_settings)

        execution = await container.execution_service.start_execution(
            "lead-intake", {"fields": {"name": "Ann", "company": "Acme", "value": 5000}}
        )

        assert execution.status == ExecutionStatus.COMPLETED
        assert [e.node_id for e in execution.node_executions] == [
            "form-trigger", "value-router", "nurture-email", "notify-owner",
        ]
        assert container.effects.of_type("email")


class TestLogging:
    """Logging processors"""

    def test_truncates_long_fields(self):
        """Long string fields are shortened; the event text is kept"""
        event = {"event": "x" * 3000, "prompt": "p" * (MAX_FIELD_LENGTH + 10), "node_id": "n1"}

        result = truncate_long_values(None, "info", event)

        assert result["event"] == "x" * 3000
        assert result["prompt"].endswith(f"... ({MAX_FIELD_LENGTH + 10} chars)")
        assert result["node_id"] == "n1"
