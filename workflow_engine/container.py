"""
Dependency Injection Container

Wires the engine's collaborators from Settings. Every service lives on the
container instance; nothing in the engine core is a module-level singleton.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .config import Settings, settings as default_settings
from .database import create_engine, create_session_factory, create_tables, init_db
from .logging_config import get_logger
from .services.ai_provider import AIProvider, HTTPCompletionProvider
from .services.data_store import DataStore, InMemoryDataStore, SqlAlchemyDataStore
from .services.effects import EffectDispatcher, InMemoryEffectDispatcher, WebhookEffectDispatcher
from .services.execution_service import ExecutionService
from .services.identity import IdentityProvider, RequestIdentityProvider
from .services.variable_store import InMemoryVariableStore, RedisVariableStore, VariableStore
from .workflows.hitl import HITLGate
from .workflows.persistence import ExecutionStore, InMemoryExecutionStore, SqlAlchemyExecutionStore
from .workflows.registry import NodeRegistry, NodeServices, create_default_registry
from .workflows.templates.loader import WorkflowDefinitionLoader
from .workflows.walker import GraphWalker

logger = get_logger(__name__)


@dataclass
class EngineContainer:
    """
    Engine dependency container.

    Usage:
        container = create_container(settings)
        await container.initialize()
        execution = await container.execution_service.start_execution("lead-intake", payload)
        await container.shutdown()
    """

    settings: Settings
    execution_store: ExecutionStore
    data_store: DataStore
    variable_store: VariableStore
    effects: EffectDispatcher
    identity: IdentityProvider
    registry: NodeRegistry
    hitl_gate: HITLGate
    walker: GraphWalker
    execution_service: ExecutionService
    ai_provider: Optional[AIProvider] = None
    loader: Optional[WorkflowDefinitionLoader] = None

    # Set when STORAGE_BACKEND=database
    db_engine: Optional[AsyncEngine] = None
    session_factory: Optional[async_sessionmaker] = None

    _initialized: bool = field(default=False, repr=False)
    _shutdown: bool = field(default=False, repr=False)

    async def initialize(self, create_schema: bool = False) -> None:
        """Verify the database connection (and optionally create tables)."""
        if self._initialized:
            logger.warning("Container already initialized, skipping")
            return

        if self.db_engine is not None:
            await init_db(self.db_engine)
            if create_schema:
                await create_tables(self.db_engine)

        self._initialized = True
        logger.info(
            "Engine container initialized",
            storage_backend=self.settings.STORAGE_BACKEND,
            variable_backend=self.settings.VARIABLE_BACKEND,
        )

    async def shutdown(self) -> None:
        """Stop background runs and release clients and connections."""
        if self._shutdown:
            return
        logger.info("Shutting down engine container")

        await self.execution_service.shutdown()
        for name, closable in (
            ("ai_provider", self.ai_provider),
            ("effects", self.effects),
            ("variable_store", self.variable_store),
        ):
            if closable is None:
                continue
            try:
                await closable.close()
            except Exception as e:
                logger.error("Error closing service", service=name, error=str(e))

        if self.db_engine is not None:
            await self.db_engine.dispose()

        self._shutdown = True
        logger.info("Engine container shutdown complete")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown


def create_container(settings: Optional[Settings] = None, **overrides: Any) -> EngineContainer:
    """
    Build a container from settings.

    Any collaborator may be passed explicitly (``execution_store=``,
    ``data_store=``, ``variable_store=``, ``ai_provider=``, ``effects=``,
    ``identity=``, ``registry=``, ``loader=``); the rest use defaults chosen
    by STORAGE_BACKEND / VARIABLE_BACKEND.
    """
    settings = settings or default_settings

    db_engine = overrides.get("db_engine")
    session_factory = overrides.get("session_factory")
    needs_db = settings.STORAGE_BACKEND == "database" and (
        "execution_store" not in overrides or "data_store" not in overrides
    )
    if needs_db and session_factory is None:
        db_engine = db_engine or create_engine(settings.DATABASE_URL, settings.DEBUG)
        session_factory = create_session_factory(db_engine)

    execution_store = overrides.get("execution_store")
    if execution_store is None:
        if settings.STORAGE_BACKEND == "database":
            execution_store = SqlAlchemyExecutionStore(session_factory, settings.EXECUTION_RETENTION_LIMIT)
        else:
            execution_store = InMemoryExecutionStore(settings.EXECUTION_RETENTION_LIMIT)

    data_store = overrides.get("data_store")
    if data_store is None:
        data_store = SqlAlchemyDataStore(session_factory) if settings.STORAGE_BACKEND == "database" else InMemoryDataStore()

    variable_store = overrides.get("variable_store")
    if variable_store is None:
        if settings.VARIABLE_BACKEND == "redis":
            variable_store = RedisVariableStore.from_url(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)
        else:
            variable_store = InMemoryVariableStore()

    ai_provider = overrides.get("ai_provider")
    if ai_provider is None and settings.AI_API_KEY:
        ai_provider = HTTPCompletionProvider(
            base_url=settings.AI_PROVIDER_URL,
            api_key=settings.AI_API_KEY,
            default_model=settings.AI_DEFAULT_MODEL,
            timeout=settings.AI_REQUEST_TIMEOUT,
        )

    effects = overrides.get("effects")
    if effects is None:
        effects = WebhookEffectDispatcher(settings.EFFECT_WEBHOOK_URL) if settings.EFFECT_WEBHOOK_URL else InMemoryEffectDispatcher()

    identity = overrides.get("identity") or RequestIdentityProvider()
    registry = overrides.get("registry") or create_default_registry()
    loader = overrides.get("loader") or WorkflowDefinitionLoader(settings.WORKFLOW_TEMPLATES_DIR)

    services = NodeServices(
        ai_provider=ai_provider,
        data_store=data_store,
        effects=effects,
        identity=identity,
        settings=settings,
    )
    hitl_gate = HITLGate(data_store, effects=effects, identity=identity, settings=settings)
    walker = GraphWalker(
        registry=registry,
        execution_store=execution_store,
        hitl_gate=hitl_gate,
        services=services,
        variable_store=variable_store,
        settings=settings,
        edge_predicate=overrides.get("edge_predicate"),
    )
    execution_service = ExecutionService(walker, execution_store, data_store, loader)

    return EngineContainer(
        settings=settings,
        execution_store=execution_store,
        data_store=data_store,
        variable_store=variable_store,
        effects=effects,
        identity=identity,
        registry=registry,
        hitl_gate=hitl_gate,
        walker=walker,
        execution_service=execution_service,
        ai_provider=ai_provider,
        loader=loader,
        db_engine=db_engine,
        session_factory=session_factory,
    )
