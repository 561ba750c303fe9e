"""
Execution Service

Facade over the graph walker used by the HTTP layer: resolves workflow
definitions, starts runs (awaited or in the background), and answers
history and HITL queries.
"""

import asyncio
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..exceptions import ExecutionNotFound
from ..logging_config import get_logger
from ..workflows.graph import WorkflowGraph
from ..workflows.persistence import ExecutionStore
from ..workflows.simulation import new_simulation_id
from ..workflows.state import ExecutionOptions, HITLRequest, HITLRequestStatus, WorkflowExecution
from ..workflows.templates.loader import WorkflowDefinitionLoader, build_graph
from ..workflows.walker import GraphWalker
from .data_store import DataStore

logger = get_logger(__name__)


class ExecutionService:
    """Starts, resumes, cancels and queries workflow executions."""

    def __init__(
        self,
        walker: GraphWalker,
        execution_store: ExecutionStore,
        data_store: DataStore,
        loader: Optional[WorkflowDefinitionLoader] = None,
    ):
        self.walker = walker
        self.store = execution_store
        self.data_store = data_store
        self.loader = loader or WorkflowDefinitionLoader()
        self._running: Dict[str, asyncio.Task] = {}

    def resolve_graph(self, workflow_id: str, definition: Optional[Dict[str, Any]] = None) -> WorkflowGraph:
        """Graph from an inline definition, or the stored definition of ``workflow_id``."""
        if definition is None:
            return self.loader.load(workflow_id)
        return build_graph({"id": workflow_id, "name": workflow_id, **definition})

    async def start_execution(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        definition: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Run a workflow to completion (or its first HITL pause)."""
        graph = self.resolve_graph(workflow_id, definition)
        return await self.walker.run(graph, trigger_data, options)

    async def start_execution_background(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
        definition: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Start a run on an asyncio task.

        Returns:
            The execution id, available immediately
        """
        graph = self.resolve_graph(workflow_id, definition)
        options = options or ExecutionOptions()
        execution_id = options.execution_id or (new_simulation_id() if options.is_simulation else str(uuid4()))
        options = options.model_copy(update={"execution_id": execution_id})

        task = asyncio.create_task(self.walker.run(graph, trigger_data, options))
        self._running[execution_id] = task
        task.add_done_callback(lambda t: self._on_done(execution_id, t))

        logger.info("Execution started in background", execution_id=execution_id, workflow_id=workflow_id)
        return execution_id

    def _on_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._running.pop(execution_id, None)
        if task.cancelled():
            logger.warning("Background execution task cancelled", execution_id=execution_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("Background execution task crashed", execution_id=execution_id, error=str(error))

    async def resume(
        self,
        execution_id: str,
        response_value: Any = None,
        response_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        return await self.walker.resume(execution_id, response_value, response_context)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        return await self.walker.cancel(execution_id)

    async def process_expired_hitl_requests(self) -> List[WorkflowExecution]:
        return await self.walker.process_expired_hitl_requests()

    # ==================== Queries ====================

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        """
        Live record when the run is held in memory, else the stored one.

        Raises:
            ExecutionNotFound: Unknown execution
        """
        execution = self.walker.get_live_execution(execution_id)
        if execution is None:
            execution = await self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def list_executions(
        self,
        workflow_id: str,
        is_test_mode: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        return await self.store.list(workflow_id, is_test_mode=is_test_mode, limit=limit)

    async def list_all_executions(self, limit: int = 50) -> List[WorkflowExecution]:
        return await self.store.list_all(limit)

    async def clear_history(self, workflow_id: str) -> int:
        deleted = await self.store.delete_for_workflow(workflow_id)
        logger.info("Execution history cleared", workflow_id=workflow_id, deleted=deleted)
        return deleted

    async def list_hitl_requests(
        self,
        execution_id: Optional[str] = None,
        status: Optional[HITLRequestStatus] = None,
    ) -> List[HITLRequest]:
        return await self.data_store.list_hitl_requests(execution_id=execution_id, status=status)

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._running

    @property
    def background_count(self) -> int:
        return len(self._running)

    async def shutdown(self) -> None:
        """Cancel background runs still in flight."""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Background executions cancelled", count=len(tasks))
        self._running.clear()
