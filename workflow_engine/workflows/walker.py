"""
Graph Walker

Drives one workflow run over an explicit work queue:

1. Locate the trigger (the unique node without incoming edges)
2. Seed the execution scope from the trigger payload
3. Pop nodes from the queue, run their handlers, fold outputs into the
   variable context and schedule children through the edge predicate
4. Stop at a terminal status, or pause at a HITL gate

Every node runs at most once per run (visited set). Join nodes wait on a
barrier as background tasks while the queue keeps draining. ``run()``
always resolves to an execution record; it never raises.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .. import metrics
from ..config import Settings, settings as default_settings
from ..exceptions import (
    AppException,
    ErrorCode,
    ExecutionNotFound,
    HITLAlreadyAnswered,
    HITLTimeout,
    InvalidExecutionState,
    NodeHandlerError,
)
from ..logging_config import bind_execution_context, clear_execution_context, get_logger
from .graph import WorkflowGraph
from .hitl import HITLGate, TimeoutAction, gate_key
from .nodes import FailurePolicy, NodeKind, WorkflowEdge, WorkflowNode
from .persistence import ExecutionStore
from .registry import NodeRegistry, NodeServices
from .simulation import is_external_effect, new_simulation_id, simulate_node_output
from .splitter import BranchResult, JoinBarrier, run_join, run_splitter
from .state import (
    ExecutionContext,
    ExecutionOptions,
    ExecutionStatus,
    HITLRequest,
    HITLRequestStatus,
    NodeExecution,
    NodeExecutionStatus,
    WorkflowExecution,
)
from .variables import VariableContext, VariableScope

logger = get_logger(__name__)

# listener(event, data); may be sync or async
Listener = Callable[[str, Dict[str, Any]], Any]
# predicate(edge, source_node, source_output) -> follow?
EdgePredicate = Callable[[WorkflowEdge, WorkflowNode, Any], bool]


def default_edge_predicate(edge: WorkflowEdge, source: WorkflowNode, output: Any) -> bool:
    """
    Unlabelled edges are always followed. Labelled edges out of a router
    follow ``selectedRoute``; out of a condition they follow ``"true"`` or
    ``"false"`` matching ``result``.
    """
    if edge.label is None:
        return True
    if source.kind == NodeKind.ROUTER:
        return isinstance(output, dict) and str(output.get("selectedRoute")) == edge.label
    if source.kind == NodeKind.CONDITION:
        if not isinstance(output, dict):
            return False
        return str(bool(output.get("result"))).lower() == edge.label.strip().lower()
    return True


@dataclass
class _PendingJoin:
    node: WorkflowNode
    entry: NodeExecution
    task: "asyncio.Task[Any]"


class GraphWalker:
    """
    Executes workflow graphs.

    Example:
        walker = GraphWalker(registry, execution_store, hitl_gate, services)
        execution = await walker.run(graph, {"fields": {"email": "a@b.com"}},
                                     ExecutionOptions(triggered_by="form"))
    """

    def __init__(
        self,
        registry: NodeRegistry,
        execution_store: ExecutionStore,
        hitl_gate: HITLGate,
        services: Optional[NodeServices] = None,
        variable_store: Optional[Any] = None,
        settings: Optional[Settings] = None,
        edge_predicate: Optional[EdgePredicate] = None,
    ):
        self.registry = registry
        self.store = execution_store
        self.hitl = hitl_gate
        self.settings = settings or default_settings
        self.services = services or NodeServices(settings=self.settings)
        self.variable_store = variable_store
        self.edge_predicate = edge_predicate or default_edge_predicate

        # Live and paused runs of this process
        self._contexts: Dict[str, ExecutionContext] = {}
        self._barriers: Dict[str, Dict[str, JoinBarrier]] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}

        self._listeners: List[Listener] = []
        self._execution_listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._workflow_listeners: Dict[str, List[Listener]] = defaultdict(list)

    # ==================== Listeners ====================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Listen to every run. Returns an unsubscribe callable."""
        return self._add_listener(self._listeners, listener)

    def subscribe_execution(self, execution_id: str, listener: Listener) -> Callable[[], None]:
        return self._add_listener(self._execution_listeners[execution_id], listener)

    def subscribe_workflow(self, workflow_id: str, listener: Listener) -> Callable[[], None]:
        return self._add_listener(self._workflow_listeners[workflow_id], listener)

    @staticmethod
    def _add_listener(bucket: List[Listener], listener: Listener) -> Callable[[], None]:
        bucket.append(listener)

        def unsubscribe() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return unsubscribe

    async def _emit(self, execution: WorkflowExecution, event: str, data: Dict[str, Any]) -> None:
        """Notify listeners in subscription order."""
        payload = {"execution_id": execution.id, "workflow_id": execution.workflow_id, **data}
        listeners = [
            *self._listeners,
            *self._execution_listeners.get(execution.id, []),
            *self._workflow_listeners.get(execution.workflow_id, []),
        ]
        for listener in listeners:
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in execution listener", event=event, error=str(e))

    async def _emit_node(self, context: ExecutionContext, node: WorkflowNode, entry: NodeExecution) -> None:
        await self._emit(context.execution, f"node_{entry.status.value}", {
            "node_id": node.id,
            "node_type": node.type_name,
            "status": entry.status.value,
            "node_execution": entry.model_dump(mode="json"),
        })

    # ==================== Entry points ====================

    async def run(
        self,
        graph: WorkflowGraph,
        trigger_data: Optional[Dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> WorkflowExecution:
        """
        Execute a workflow graph from its trigger.

        Returns:
            The execution record in a terminal status, or ``waiting_hitl``
        """
        options = options or ExecutionOptions()
        execution_id = options.execution_id or (new_simulation_id() if options.is_simulation else str(uuid4()))
        user_id = options.user_id or self._current_user()
        options = options.model_copy(update={"execution_id": execution_id, "user_id": user_id})

        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=graph.id,
            workflow_name=options.workflow_name or graph.name or None,
            triggered_by=options.triggered_by,
            trigger_data=dict(trigger_data or {}),
            is_test_mode=options.is_simulation,
            user_id=user_id,
        )
        variables = VariableContext(
            workflow_id=graph.id,
            execution_id=execution_id,
            environment=self.settings.ENVIRONMENT,
        )
        context = self._attach(ExecutionContext(execution, graph, variables, options))

        bind_execution_context(execution_id, graph.id)
        try:
            logger.info(
                "Workflow execution started",
                triggered_by=execution.triggered_by,
                is_simulation=options.is_simulation,
                nodes=len(graph.nodes),
            )
            await self._emit(execution, "execution_started", {"status": execution.status.value})

            try:
                trigger = graph.find_trigger()
                graph.check_acyclic(trigger.id)
                if self.variable_store is not None:
                    await context.variables.load(self.variable_store)
            except AppException as e:
                logger.error("Workflow execution could not start", error=e.message, error_code=e.error_code.value)
                execution.record_error(None, e.message, e.error_code.value)
                return await self._finalize(context, ExecutionStatus.FAILED)

            self._seed(context, execution.trigger_data)
            context.schedule(trigger.id)
            return await self._drive(context)
        finally:
            clear_execution_context()

    async def resume(
        self,
        execution_id: str,
        response_value: Any = None,
        response_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """
        Answer the pending HITL request of a paused run and continue it.

        Raises:
            ExecutionNotFound: Unknown execution
            HITLAlreadyAnswered: The request was already answered
            HITLTimeout: The request expired; its timeout action has been applied
            InvalidExecutionState: The run is not waiting for input
        """
        execution = await self._load_execution(execution_id)
        request_id = execution.current_hitl_request_id

        if request_id is None or execution.status != ExecutionStatus.WAITING_HITL:
            if request_id is not None:
                request = await self.hitl.get(request_id)
                if request.status == HITLRequestStatus.ANSWERED:
                    raise HITLAlreadyAnswered(request_id)
            raise InvalidExecutionState(
                execution_id, execution.status.value, expected=ExecutionStatus.WAITING_HITL.value
            )

        try:
            request = await self.hitl.answer(request_id, response_value, response_context)
        except HITLTimeout:
            await self._apply_timeout(await self.hitl.get(request_id))
            raise

        metrics.record_hitl("answered")
        context = await self._load_context(execution)
        return await self._continue(context, request, response_value, response_context)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """
        Cancel a running or paused execution.

        A running walk is persisted as cancelled at once and stops before the
        next handler starts; an in-flight handler's output is discarded when
        it returns. A paused run is finalized immediately and its pending
        HITL request expired.
        """
        context = self._contexts.get(execution_id)
        if context is not None and context.execution.status == ExecutionStatus.RUNNING:
            context.cancel_requested = True
            context.execution.finish(ExecutionStatus.CANCELLED)
            await self._save(context)
            self._wakeups[execution_id].set()
            logger.info("Execution cancellation requested", execution_id=execution_id)
            return context.execution

        execution = await self._load_execution(execution_id)
        if execution.status != ExecutionStatus.WAITING_HITL:
            raise InvalidExecutionState(execution_id, execution.status.value)

        expired = await self.hitl.cancel_pending(execution_id)
        context = await self._load_context(execution)
        context.cancel_requested = True
        logger.info("Paused execution cancelled", execution_id=execution_id, expired_requests=expired)
        bind_execution_context(execution_id, execution.workflow_id)
        try:
            return await self._finalize(context, ExecutionStatus.CANCELLED)
        finally:
            clear_execution_context()

    async def process_expired_hitl_requests(self) -> List[WorkflowExecution]:
        """
        Apply the timeout action of every expired pending HITL request.

        Returns:
            Executions that were resumed or failed
        """
        processed = []
        for request in await self.hitl.expired_requests():
            try:
                execution = await self._apply_timeout(request)
            except ExecutionNotFound:
                logger.warning("Expired HITL request has no execution", request_id=request.id)
                continue
            if execution is not None:
                processed.append(execution)
        if processed:
            logger.info("Expired HITL requests processed", count=len(processed))
        return processed

    def get_live_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Record of a run held by this walker (running or paused), if any."""
        context = self._contexts.get(execution_id)
        return context.execution if context is not None else None

    # ==================== Setup ====================

    def _current_user(self) -> Optional[str]:
        identity = self.services.identity
        return identity.current_user_id() if identity is not None else None

    def _attach(self, context: ExecutionContext) -> ExecutionContext:
        context.services = self.services
        self._contexts[context.execution_id] = context
        self._wakeups[context.execution_id] = asyncio.Event()
        return context

    def _release(self, context: ExecutionContext) -> None:
        self._contexts.pop(context.execution_id, None)
        self._barriers.pop(context.execution_id, None)
        self._wakeups.pop(context.execution_id, None)

    @staticmethod
    def _seed(context: ExecutionContext, trigger_data: Dict[str, Any]) -> None:
        """Copy the trigger payload and caller context into the execution scope."""
        variables = context.variables
        variables.set(VariableScope.EXECUTION, "triggerData", trigger_data)
        for key, value in trigger_data.items():
            variables.set(VariableScope.EXECUTION, key, value)

        if "fields" in trigger_data and "formData" not in trigger_data:
            variables.set(VariableScope.EXECUTION, "formData", {
                "submittedAt": trigger_data.get("submittedAt") or datetime.utcnow().isoformat(),
                "fields": trigger_data["fields"],
                "formId": trigger_data.get("formId"),
                "submissionId": trigger_data.get("submissionId"),
            })

        variables.update_scope(VariableScope.EXECUTION, context.options.input_context)

    async def _load_execution(self, execution_id: str) -> WorkflowExecution:
        context = self._contexts.get(execution_id)
        if context is not None:
            return context.execution
        execution = await self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def _load_context(self, execution: WorkflowExecution) -> ExecutionContext:
        """Cached context of a paused run, or one rebuilt from its snapshot."""
        context = self._contexts.get(execution.id)
        if context is not None:
            return context
        snapshot = await self.store.get_snapshot(execution.id)
        if not snapshot:
            raise InvalidExecutionState(execution.id, f"{execution.status.value} without a saved context")
        logger.info("Execution context restored from snapshot", execution_id=execution.id)
        return self._attach(ExecutionContext.from_snapshot(execution, snapshot))

    # ==================== Main loop ====================

    async def _drive(self, context: ExecutionContext) -> WorkflowExecution:
        execution = context.execution
        pending: Dict[str, _PendingJoin] = {}

        try:
            with metrics.workflow_executions_in_progress.track_inprogress():
                while execution.status == ExecutionStatus.RUNNING:
                    await self._collect_joins(context, pending)
                    if execution.status != ExecutionStatus.RUNNING or context.cancel_requested:
                        break
                    if context.queue:
                        await self._step(context, context.queue.popleft(), pending)
                        continue
                    if not pending:
                        break
                    self._seal_unreachable(context, pending)
                    await self._wait_for_joins(context, pending)
        except Exception as e:
            logger.exception("Unexpected error while walking workflow", error=str(e))
            execution.record_error(execution.current_node_id, f"Unexpected error: {e}", ErrorCode.INTERNAL_ERROR.value)
            execution.status = ExecutionStatus.FAILED

        if execution.status == ExecutionStatus.WAITING_HITL:
            await self._suspend_joins(context, pending)
            return await self._persist_paused(context)

        if execution.status == ExecutionStatus.FAILED:
            status = ExecutionStatus.FAILED
        elif context.cancel_requested:
            status = ExecutionStatus.CANCELLED
        else:
            status = ExecutionStatus.COMPLETED
        await self._abandon_joins(context, pending, f"Execution {status.value}")
        return await self._finalize(context, status)

    async def _step(self, context: ExecutionContext, node_id: str, pending: Dict[str, _PendingJoin]) -> None:
        if node_id in context.visited:
            return
        node = context.graph.get_node(node_id)
        context.visited.add(node_id)
        context.execution.current_node_id = node_id

        if node.hitl_before is not None and self.hitl.should_gate(node, "before", context):
            context.visited.discard(node_id)
            context.queue.appendleft(node_id)
            await self._pause(context, node, "before")
            return

        entry = self._open_entry(context, node)
        await self._emit_node(context, node, entry)

        if node.is_join:
            barrier = self._barrier(context, node.id)
            task = asyncio.create_task(
                run_join(node, context, barrier, self.settings.DEFAULT_JOIN_TIMEOUT_SECONDS)
            )
            pending[node_id] = _PendingJoin(node=node, entry=entry, task=task)
            logger.debug("Join waiting on branches", node_id=node_id, sources=barrier.sources)
            return

        try:
            output = await self._execute(node, context)
        except Exception as e:
            if context.cancel_requested:
                await self._discard(context, node, entry)
                return
            await self._fail(context, node, entry, e)
            return

        if context.cancel_requested:
            await self._discard(context, node, entry)
            return
        await self._succeed(context, node, entry, output)

    async def _execute(self, node: WorkflowNode, context: ExecutionContext) -> Any:
        if node.is_splitter:
            return await run_splitter(
                node,
                context,
                lambda target: self._run_branch(context, target),
                self.settings.MAX_PARALLEL_BRANCHES,
            )
        if context.is_simulation and is_external_effect(node):
            previous = context.variables.get(VariableScope.WORKFLOW, "previousOutput")
            logger.debug("Simulating external effect", node_id=node.id, node_type=node.type_name)
            return simulate_node_output(
                node,
                previous if isinstance(previous, dict) else {},
                context.options.mock_data,
            )
        return await self.registry.dispatch(node, context)

    def _is_gated(self, node: WorkflowNode, context: ExecutionContext) -> bool:
        return self.hitl.should_gate(node, "before", context) or self.hitl.should_gate(node, "after", context)

    async def _run_branch(self, context: ExecutionContext, node_id: str) -> BranchResult:
        """
        Run one splitter branch; failures are reported, never raised.

        A branch with an active HITL gate is not run inline: it is queued for
        the main walk, which pauses at its gate. Each branch gets its own
        branch scope.
        """
        node = context.graph.get_node(node_id)
        if node_id in context.visited:
            entries = context.execution.node_executions_for(node_id)
            ok = bool(entries) and entries[-1].status == NodeExecutionStatus.COMPLETED
            return BranchResult(node_id=node_id, success=ok, result=context.node_outputs.get(node_id),
                                error=None if ok else "Node already executed")
        if context.cancel_requested:
            return BranchResult(node_id=node_id, success=False, error="Execution cancelled")
        if self._is_gated(node, context):
            context.schedule(node_id)
            logger.info("Branch deferred to its approval gate", node_id=node_id)
            return BranchResult(node_id=node_id, success=False, deferred=True, error="Waiting for human input")
        context.visited.add(node_id)

        with context.variables.branch_scope():
            return await self._execute_branch(context, node)

    async def _execute_branch(self, context: ExecutionContext, node: WorkflowNode) -> BranchResult:
        node_id = node.id
        entry = self._open_entry(context, node)
        await self._emit_node(context, node, entry)
        try:
            output = await self._execute(node, context)
        except Exception as e:
            if context.cancel_requested:
                await self._discard(context, node, entry)
                return BranchResult(node_id=node_id, success=False, error="Execution cancelled")
            wrapped = NodeHandlerError.wrap(node.id, e)
            await self._record_failure(context, node, entry, wrapped)
            context.variables.record_node_output(node.id, wrapped.partial_output)
            self._advance(context, node, wrapped.partial_output, success=False, error=wrapped.message, joins_only=True)
            return BranchResult(node_id=node_id, success=False, error=wrapped.message)

        if context.cancel_requested:
            await self._discard(context, node, entry)
            return BranchResult(node_id=node_id, success=False, error="Execution cancelled")
        await self._record_success(context, node, entry, output)
        self._advance(context, node, output, success=True)
        return BranchResult(node_id=node_id, success=True, result=output)

    # ==================== Node bookkeeping ====================

    @staticmethod
    def _open_entry(context: ExecutionContext, node: WorkflowNode) -> NodeExecution:
        entry = NodeExecution(node_id=node.id, node_type=node.type_name, node_name=node.label)
        entry.start(context.variables.get(VariableScope.WORKFLOW, "previousOutput"))
        return context.execution.add_node_execution(entry)

    async def _record_success(
        self, context: ExecutionContext, node: WorkflowNode, entry: NodeExecution, output: Any
    ) -> None:
        entry.complete(output)
        context.variables.record_node_output(node.id, output)
        context.last_completed_node = node.id
        metrics.record_node(node.type_name, entry.status.value, entry.duration_seconds)
        logger.info("Node completed", node_id=node.id, node_type=node.type_name, duration=entry.duration_seconds)
        await self._emit_node(context, node, entry)

    async def _record_failure(
        self, context: ExecutionContext, node: WorkflowNode, entry: NodeExecution, error: NodeHandlerError
    ) -> None:
        entry.fail(error.message, output=error.partial_output)
        cause = error.original if isinstance(error.original, AppException) else error
        context.execution.record_error(node.id, error.message, cause.error_code.value)
        metrics.record_node(node.type_name, entry.status.value, entry.duration_seconds)
        logger.warning(
            "Node failed",
            node_id=node.id,
            node_type=node.type_name,
            error=error.message,
            error_code=cause.error_code.value,
            on_failure=node.on_failure.value,
        )
        await self._emit_node(context, node, entry)

    async def _discard(self, context: ExecutionContext, node: WorkflowNode, entry: NodeExecution) -> None:
        entry.skip("Execution cancelled")
        metrics.record_node(node.type_name, entry.status.value, entry.duration_seconds)
        logger.info("Node output discarded after cancellation", node_id=node.id)
        await self._emit_node(context, node, entry)

    async def _succeed(
        self, context: ExecutionContext, node: WorkflowNode, entry: NodeExecution, output: Any
    ) -> None:
        await self._record_success(context, node, entry, output)
        if node.hitl_after is not None and self.hitl.should_gate(node, "after", context):
            await self._pause(context, node, "after")
            return
        self._advance(context, node, output, success=True)

    async def _fail(self, context: ExecutionContext, node: WorkflowNode, entry: NodeExecution, error: BaseException) -> None:
        wrapped = NodeHandlerError.wrap(node.id, error)
        await self._record_failure(context, node, entry, wrapped)

        if node.on_failure == FailurePolicy.CONTINUE:
            context.variables.record_node_output(node.id, wrapped.partial_output)
            self._advance(context, node, wrapped.partial_output, success=False, error=wrapped.message)
            return

        context.execution.status = ExecutionStatus.FAILED
        logger.error("Execution stopped by node failure", node_id=node.id, error=wrapped.message)

    def _advance(
        self,
        context: ExecutionContext,
        node: WorkflowNode,
        output: Any,
        success: bool,
        error: Optional[str] = None,
        joins_only: bool = False,
    ) -> None:
        """Schedule children along followed edges and settle downstream join barriers."""
        followed: Dict[str, bool] = {}
        for edge in context.graph.outgoing(node.id):
            followed[edge.target] = followed.get(edge.target, False) or self.edge_predicate(edge, node, output)

        for target_id, follow in followed.items():
            target = context.graph.get_node(target_id)
            if target.is_join:
                barrier = self._barrier(context, target_id)
                if not follow:
                    barrier.seal(node.id)
                    continue
                barrier.settle(node.id, success, output, error)
                context.schedule(target_id)
            elif follow and not joins_only:
                context.schedule(target_id)

    # ==================== Joins ====================

    def _barrier(self, context: ExecutionContext, join_id: str) -> JoinBarrier:
        barriers = self._barriers.setdefault(context.execution_id, {})
        if join_id not in barriers:
            barriers[join_id] = JoinBarrier.for_node(context, join_id)
        return barriers[join_id]

    async def _collect_joins(self, context: ExecutionContext, pending: Dict[str, _PendingJoin]) -> None:
        for join_id in [j for j, p in pending.items() if p.task.done()]:
            join = pending.pop(join_id)
            if join.task.cancelled():
                continue
            error = join.task.exception()
            if error is not None:
                await self._fail(context, join.node, join.entry, error)
            else:
                await self._succeed(context, join.node, join.entry, join.task.result())
            if context.execution.status != ExecutionStatus.RUNNING:
                return

    def _seal_unreachable(self, context: ExecutionContext, pending: Dict[str, _PendingJoin]) -> None:
        """Settle join sources that no queued or waiting work can reach as skipped."""
        reachable = context.graph.descendants([*context.queue, *pending])
        for join_id in pending:
            barrier = self._barrier(context, join_id)
            for source in barrier.pending_sources():
                if source not in reachable:
                    barrier.seal(source)

    async def _wait_for_joins(self, context: ExecutionContext, pending: Dict[str, _PendingJoin]) -> None:
        waiter = asyncio.ensure_future(self._wakeups[context.execution_id].wait())
        try:
            await asyncio.wait(
                [*(join.task for join in pending.values()), waiter],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()

    @staticmethod
    async def _stop_tasks(pending: Dict[str, _PendingJoin]) -> None:
        for join in pending.values():
            join.task.cancel()
        await asyncio.gather(*(join.task for join in pending.values()), return_exceptions=True)

    async def _suspend_joins(self, context: ExecutionContext, pending: Dict[str, _PendingJoin]) -> None:
        """Stop waiting joins at a pause; they are re-queued with their barrier state kept."""
        await self._stop_tasks(pending)
        for join_id, join in pending.items():
            context.execution.node_executions.remove(join.entry)
            context.visited.discard(join_id)
            context.queue.append(join_id)
        pending.clear()

    async def _abandon_joins(self, context: ExecutionContext, pending: Dict[str, _PendingJoin], reason: str) -> None:
        await self._stop_tasks(pending)
        for join in pending.values():
            join.entry.skip(reason)
            await self._emit_node(context, join.node, join.entry)
        pending.clear()

    # ==================== HITL ====================

    async def _pause(self, context: ExecutionContext, node: WorkflowNode, phase: str) -> None:
        request = await self.hitl.open_request(node, phase, context)
        metrics.record_hitl("created")
        if context.cancel_requested:
            await self.hitl.cancel_pending(context.execution_id)
            return
        execution = context.execution
        execution.status = ExecutionStatus.WAITING_HITL
        execution.current_node_id = node.id
        execution.current_hitl_request_id = request.id
        logger.info("Execution paused for human input", node_id=node.id, phase=phase, request_id=request.id)

    async def _continue(
        self,
        context: ExecutionContext,
        request: HITLRequest,
        value: Any,
        response_context: Optional[Dict[str, Any]],
    ) -> WorkflowExecution:
        execution = context.execution
        bind_execution_context(execution.id, execution.workflow_id)
        try:
            execution.status = ExecutionStatus.RUNNING
            context.variables.update_scope(VariableScope.EXECUTION, response_context or {})
            context.variables.set(VariableScope.EXECUTION, "hitlResponse", {
                "requestId": request.id,
                "nodeId": request.node_id,
                "phase": request.phase,
                "status": request.status.value,
                "value": value,
            })
            context.cleared_gates.add(gate_key(request.node_id, request.phase))
            logger.info("Execution resumed", node_id=request.node_id, phase=request.phase, request_status=request.status.value)
            await self._emit(execution, "execution_resumed", {"status": execution.status.value, "request_id": request.id})

            if request.phase == "after":
                node = context.graph.get_node(request.node_id)
                self._advance(context, node, context.node_outputs.get(node.id), success=True)
            return await self._drive(context)
        finally:
            clear_execution_context()

    async def _apply_timeout(self, request: HITLRequest) -> Optional[WorkflowExecution]:
        """Expire a request and resume or fail its run per ``timeout_action``."""
        if request.status == HITLRequestStatus.PENDING:
            request = await self.hitl.expire(request)
            metrics.record_hitl("expired")

        execution = await self._load_execution(request.execution_id)
        if execution.status != ExecutionStatus.WAITING_HITL or execution.current_hitl_request_id != request.id:
            return None
        context = await self._load_context(execution)

        if request.timeout_action in (TimeoutAction.CONTINUE, TimeoutAction.USE_DEFAULT):
            value = request.default_value if request.timeout_action == TimeoutAction.USE_DEFAULT else None
            return await self._continue(context, request, value, {})

        error = HITLTimeout(request.id)
        bind_execution_context(execution.id, execution.workflow_id)
        try:
            execution.record_error(request.node_id, error.message, error.error_code.value)
            logger.warning("Execution failed on HITL timeout", request_id=request.id, node_id=request.node_id)
            return await self._finalize(context, ExecutionStatus.FAILED)
        finally:
            clear_execution_context()

    # ==================== Persistence ====================

    async def _flush_variables(self, context: ExecutionContext) -> None:
        if self.variable_store is None:
            return
        try:
            await context.variables.flush(self.variable_store)
        except AppException as e:
            logger.error("Variable flush failed", error=e.message)
            context.execution.record_error(None, e.message, e.error_code.value)

    async def _save(self, context: ExecutionContext, snapshot: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self.store.save(context.execution, snapshot)
        except Exception as e:
            logger.exception("Failed to persist execution record", error=str(e))
            context.execution.record_error(
                None, f"Failed to persist execution: {e}", ErrorCode.SERVICE_DATABASE_ERROR.value
            )

    async def _persist_paused(self, context: ExecutionContext) -> WorkflowExecution:
        execution = context.execution
        await self._flush_variables(context)
        await self._save(context, context.to_snapshot())
        await self._emit(execution, "execution_waiting_hitl", {
            "status": execution.status.value,
            "node_id": execution.current_node_id,
            "request_id": execution.current_hitl_request_id,
        })
        return execution

    async def _finalize(self, context: ExecutionContext, status: ExecutionStatus) -> WorkflowExecution:
        execution = context.execution
        execution.finish(status)
        if context.last_completed_node is not None:
            execution.final_output = context.node_outputs.get(context.last_completed_node)

        await self._flush_variables(context)
        await self._save(context)
        context.variables.clear_execution()
        self._release(context)

        duration = (execution.completed_at - execution.started_at).total_seconds()
        metrics.record_execution(status.value, execution.is_test_mode, duration)
        logger.info(
            "Workflow execution finished",
            status=status.value,
            duration_seconds=duration,
            node_executions=len(execution.node_executions),
            errors=len(execution.error_log),
        )
        await self._emit(execution, f"execution_{status.value}", {
            "status": status.value,
            "execution": execution.to_dict(),
        })
        return execution
